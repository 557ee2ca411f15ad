"""Time-gated scheduler loop.

Every tick checks the three cadences (daily digest, weekly digest, job
cleanup), runs whichever are due, then drains ready jobs from the queue.
The last run of each cadence is stored in the ``scheduler_state`` table so
a restart does not fire a cadence twice in the same window.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from statusping.config import (
    CLEANUP_HOUR,
    DAILY_DIGEST_HOUR,
    JOB_BATCH_SIZE,
    JOB_RETENTION_DAYS,
    SCHEDULER_INTERVAL_SECONDS,
    WEEKLY_DIGEST_DAY,
    WEEKLY_DIGEST_HOUR,
)
from statusping.database import _parse_dt, _q, _ts, get_connection, utcnow
from statusping.jobs.digest import queue_daily_digests, queue_weekly_digests, run_job_processor
from statusping.jobs.queue import purge_jobs_older_than

logger = logging.getLogger(__name__)

DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

# cadence -> (trigger hour UTC, required weekday or None)
CADENCES = {
    "daily_digest": (DAILY_DIGEST_HOUR, None),
    "weekly_digest": (WEEKLY_DIGEST_HOUR, WEEKLY_DIGEST_DAY),
    "cleanup": (CLEANUP_HOUR, None),
}


def get_last_run(cadence: str) -> Optional[datetime]:
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(_q("SELECT last_run FROM scheduler_state WHERE cadence = ?"), (cadence,))
    row = cursor.fetchone()
    conn.close()

    return _parse_dt(row["last_run"]) if row else None


def set_last_run(cadence: str, when: datetime):
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("""
            INSERT INTO scheduler_state (cadence, last_run) VALUES (?, ?)
            ON CONFLICT (cadence) DO UPDATE SET last_run = excluded.last_run
        """),
        (cadence, _ts(when)),
    )

    conn.commit()
    conn.close()


def _trigger_instant(now: datetime, hour: int) -> datetime:
    return now.replace(hour=hour, minute=0, second=0, microsecond=0)


class Scheduler:
    """Decides when cadence work is due and keeps the job queue moving.

    ``clock`` returns the current UTC time and can be swapped out in tests.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow, batch_size: int = JOB_BATCH_SIZE):
        self.clock = clock
        self.batch_size = batch_size

    def should_run(self, cadence: str, now: Optional[datetime] = None) -> bool:
        """True once today's trigger hour has passed and the cadence has not run since."""
        now = now or self.clock()
        hour, weekday = CADENCES[cadence]

        if weekday is not None and now.weekday() != weekday:
            return False

        target = _trigger_instant(now, hour)
        if now < target:
            return False

        last_run = get_last_run(cadence)
        return last_run is None or last_run < target

    def _run_cadence(self, cadence: str, now: datetime):
        # last_run moves even when the action fails: no retry within the same window
        logger.info("Running scheduled %s", cadence)
        try:
            if cadence == "daily_digest":
                queue_daily_digests()
            elif cadence == "weekly_digest":
                queue_weekly_digests()
            else:
                purge_jobs_older_than(JOB_RETENTION_DAYS)
        except Exception:
            logger.exception("Scheduled %s failed", cadence)
        finally:
            set_last_run(cadence, now)

    async def tick(self) -> dict:
        """Run any due cadences, then process up to batch_size ready jobs."""
        now = self.clock()
        ran = []
        for cadence in CADENCES:
            if await asyncio.to_thread(self.should_run, cadence, now):
                await asyncio.to_thread(self._run_cadence, cadence, now)
                ran.append(cadence)

        jobs = await run_job_processor(self.batch_size)
        return {"ran": ran, "jobs": jobs}

    def state(self) -> dict:
        """Snapshot of the scheduler clock, configuration and cadence bookkeeping."""
        now = self.clock()
        last_runs = {cadence: get_last_run(cadence) for cadence in CADENCES}
        return {
            "now": now.isoformat(),
            "utc_hour": now.hour,
            "utc_day": now.weekday(),
            "utc_day_name": DAY_NAMES[now.weekday()],
            "config": {
                "daily_digest_hour": DAILY_DIGEST_HOUR,
                "weekly_digest_day": WEEKLY_DIGEST_DAY,
                "weekly_digest_day_name": DAY_NAMES[WEEKLY_DIGEST_DAY],
                "weekly_digest_hour": WEEKLY_DIGEST_HOUR,
                "cleanup_hour": CLEANUP_HOUR,
                "job_retention_days": JOB_RETENTION_DAYS,
            },
            "last_run": {c: (v.isoformat() if v else None) for c, v in last_runs.items()},
            "pending": {c: self.should_run(c, now) for c in CADENCES},
        }

    # Manual triggers leave last_run alone so the regular run still happens

    def trigger_daily_digests(self) -> list:
        logger.info("Manually triggering daily digests")
        return queue_daily_digests()

    def trigger_weekly_digests(self) -> list:
        logger.info("Manually triggering weekly digests")
        return queue_weekly_digests()

    async def run_forever(self, interval: float = SCHEDULER_INTERVAL_SECONDS):
        logger.info("Scheduler started (interval %ss)", interval)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(interval)
