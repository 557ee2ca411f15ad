"""Tests for the time-gated scheduler."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from statusping.database import create_update, upsert_subscription
from statusping.jobs.queue import enqueue_job, get_job_stats
from statusping.jobs.scheduler import Scheduler, get_last_run, set_last_run

SUNDAY = datetime(2024, 3, 17, 11, 0, tzinfo=timezone.utc)


def _at(when):
    return Scheduler(clock=lambda: when)


def test_daily_waits_for_trigger_hour(fixed_now):
    early = fixed_now.replace(hour=8, minute=59)

    assert _at(early).should_run("daily_digest") is False
    assert _at(fixed_now).should_run("daily_digest") is True


def test_daily_runs_once_per_day(fixed_now):
    set_last_run("daily_digest", fixed_now.replace(hour=9, minute=0, second=30))

    assert _at(fixed_now).should_run("daily_digest") is False
    assert _at(fixed_now + timedelta(days=1)).should_run("daily_digest") is True


def test_run_before_trigger_hour_does_not_count(fixed_now):
    set_last_run("daily_digest", fixed_now.replace(hour=8))

    assert _at(fixed_now).should_run("daily_digest") is True


def test_weekly_only_on_target_day(fixed_now):
    assert _at(fixed_now).should_run("weekly_digest") is False
    assert _at(SUNDAY).should_run("weekly_digest") is True
    assert _at(SUNDAY.replace(hour=9)).should_run("weekly_digest") is False


def test_last_run_is_persisted(fixed_now):
    assert get_last_run("cleanup") is None

    set_last_run("cleanup", fixed_now)
    set_last_run("cleanup", fixed_now + timedelta(days=1))

    assert get_last_run("cleanup") == fixed_now + timedelta(days=1)


@pytest.mark.asyncio
async def test_tick_runs_due_cadences_once(fixed_now, project):
    upsert_subscription(project.id, "a@x.com", "daily")
    scheduler = _at(fixed_now)

    first = await scheduler.tick()
    second = await scheduler.tick()

    assert first["ran"] == ["daily_digest", "cleanup"]
    assert second["ran"] == []
    assert get_last_run("daily_digest") == fixed_now
    assert get_last_run("weekly_digest") is None


@pytest.mark.asyncio
async def test_failed_cadence_still_records_last_run(fixed_now):
    scheduler = _at(fixed_now)

    with patch("statusping.jobs.scheduler.queue_daily_digests", side_effect=RuntimeError("db down")):
        result = await scheduler.tick()

    assert "daily_digest" in result["ran"]
    assert get_last_run("daily_digest") == fixed_now
    assert scheduler.should_run("daily_digest") is False


@pytest.mark.asyncio
async def test_tick_always_drains_jobs(fixed_now):
    set_last_run("daily_digest", fixed_now)
    set_last_run("cleanup", fixed_now)
    scheduler = Scheduler(clock=lambda: fixed_now, batch_size=4)
    drained = {"processed": 0, "completed": 0, "failed": 0}

    with patch("statusping.jobs.scheduler.run_job_processor", AsyncMock(return_value=drained)) as run:
        result = await scheduler.tick()

    run.assert_awaited_once_with(4)
    assert result == {"ran": [], "jobs": drained}


@pytest.mark.asyncio
async def test_tick_processes_queued_digests(project):
    upsert_subscription(project.id, "a@x.com", "instant")
    create_update(project.id, "Hello")
    enqueue_job("daily_digest", {"project_id": project.id})
    # Outside every cadence window
    scheduler = _at(datetime(2024, 3, 15, 1, 0, tzinfo=timezone.utc))

    result = await scheduler.tick()

    assert result["ran"] == []
    assert result["jobs"]["completed"] == 1
    assert get_job_stats()["by_status"]["completed"] == 1


def test_manual_trigger_leaves_last_run_alone(fixed_now, project):
    upsert_subscription(project.id, "a@x.com", "weekly")
    scheduler = _at(SUNDAY)

    jobs = scheduler.trigger_weekly_digests()

    assert len(jobs) == 1
    assert get_last_run("weekly_digest") is None
    assert scheduler.should_run("weekly_digest") is True


def test_state(fixed_now):
    set_last_run("cleanup", fixed_now)

    state = _at(fixed_now).state()

    assert state["utc_hour"] == 12
    assert state["utc_day_name"] == "Friday"
    assert state["config"]["daily_digest_hour"] == 9
    assert state["config"]["weekly_digest_day_name"] == "Sunday"
    assert state["last_run"]["cleanup"] == fixed_now.isoformat()
    assert state["pending"] == {"daily_digest": True, "weekly_digest": False, "cleanup": False}
