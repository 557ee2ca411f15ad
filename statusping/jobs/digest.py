"""Digest computation: who gets notified, with which updates, and bookkeeping.

Instant digests snapshot their subscriber ids when the job is enqueued.
Daily and weekly digests resolve subscribers when the job runs and send each
one every update newer than that subscriber's ``last_sent_at`` watermark.
The watermark only moves after a confirmed successful send.

Database calls made while a job runs go through ``asyncio.to_thread`` so the
scheduler never holds the event loop during a query.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from statusping.config import JOB_BATCH_SIZE
from statusping.database import (
    advance_last_sent_at,
    get_project,
    get_project_ids_with_subscribers,
    get_subscriptions_by_ids,
    get_subscriptions_for_project,
    get_updates_since,
    get_updates_with_media,
    utcnow,
)
from statusping.delivery.digest_builder import (
    build_daily_digest,
    build_instant_update,
    build_urls,
    build_weekly_digest,
)
from statusping.delivery.dispatcher import send_batch
from statusping.models import Job, Recipient
from statusping.jobs.queue import claim_ready_jobs, enqueue_job, mark_job_completed, mark_job_failed, mark_job_processing

logger = logging.getLogger(__name__)


class DigestError(Exception):
    """Raised when a digest job cannot be processed and should be retried."""


def _summary(sent: int = 0, failed: int = 0, skipped: int = 0) -> dict:
    return {"sent": sent, "failed": failed, "skipped": skipped}


async def _record_results(results: dict, sent_at: datetime) -> dict:
    """Advance watermarks for successful sends and log the failures."""
    succeeded = [sid for sid, result in results.items() if result.success]
    for sid, result in results.items():
        if not result.success:
            logger.warning("Send failed for subscription %s: %s", sid, result.error)

    await asyncio.to_thread(advance_last_sent_at, succeeded, sent_at)
    return _summary(sent=len(succeeded), failed=len(results) - len(succeeded))


# ---------------------------------------------------------------------------
# Instant digests
# ---------------------------------------------------------------------------

def trigger_instant_digest(project_id: int, update_id: int) -> Optional[Job]:
    """Queue an instant digest for a newly created update.

    The current instant subscribers are snapshotted into the payload.
    Returns None (and enqueues nothing) when there is nobody to notify.
    """
    project = get_project(project_id)
    if project is None:
        logger.warning("Instant digest requested for missing project %s", project_id)
        return None
    if not project.notifications_enabled:
        logger.info("Notifications disabled for project %s, skipping instant digest", project_id)
        return None

    subscriptions = get_subscriptions_for_project(project_id, frequency="instant")
    if not subscriptions:
        logger.info("No instant subscribers for project %s", project_id)
        return None

    payload = {
        "project_id": project_id,
        "update_id": update_id,
        "subscriber_ids": [s.id for s in subscriptions],
    }
    job = enqueue_job("instant_digest", payload)
    logger.info(
        "Queued instant digest for update %s (%d subscribers)", update_id, len(subscriptions)
    )
    return job


async def process_instant_digest(payload: dict, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    project_id = payload.get("project_id")
    update_id = payload.get("update_id")
    subscriber_ids = payload.get("subscriber_ids") or []

    project = await asyncio.to_thread(get_project, project_id)
    if project is None:
        raise DigestError("Project {} not found".format(project_id))

    updates = await asyncio.to_thread(get_updates_with_media, [update_id])
    if not updates:
        raise DigestError("Update {} not found".format(update_id))
    update = updates[0]

    # Subscribers may have left since the job was queued
    subscriptions = await asyncio.to_thread(get_subscriptions_by_ids, subscriber_ids)
    if not subscriptions:
        logger.info("No remaining subscribers for instant digest of update %s", update_id)
        return _summary(skipped=len(subscriber_ids))

    recipients = [Recipient(email=s.email, subscription_id=s.id) for s in subscriptions]

    def render(recipient: Recipient) -> dict:
        urls = build_urls(project.magic_link_token, recipient.email)
        return build_instant_update(project, update, urls)

    results = await send_batch(recipients, render)
    summary = await _record_results(results, now)
    summary["skipped"] = len(subscriber_ids) - len(subscriptions)

    logger.info(
        "Instant digest for update %s: %d sent, %d failed",
        update_id, summary["sent"], summary["failed"],
    )
    return summary


# ---------------------------------------------------------------------------
# Scheduled (daily / weekly) digests
# ---------------------------------------------------------------------------

async def process_scheduled_digest(payload: dict, frequency: str, now: Optional[datetime] = None) -> dict:
    """Send a daily or weekly digest for one project.

    Each subscriber gets every update created after their own watermark, so
    a subscriber who missed earlier runs catches up in a single email.
    Subscribers with nothing new are skipped without touching the watermark.
    """
    now = now or utcnow()
    project_id = payload.get("project_id")

    project = await asyncio.to_thread(get_project, project_id)
    if project is None:
        raise DigestError("Project {} not found".format(project_id))
    if not project.notifications_enabled:
        logger.info("Notifications disabled for project %s, skipping %s digest", project_id, frequency)
        return _summary()

    subscriptions = await asyncio.to_thread(get_subscriptions_for_project, project_id, frequency=frequency)
    if not subscriptions:
        logger.info("No %s subscribers for project %s", frequency, project_id)
        return _summary()

    pending_updates = {}
    skipped = 0
    for subscription in subscriptions:
        updates = await asyncio.to_thread(get_updates_since, project_id, subscription.last_sent_at)
        if not updates:
            skipped += 1
            continue
        pending_updates[subscription.id] = updates

    if not pending_updates:
        logger.info("Nothing new for %s digest of project %s", frequency, project_id)
        return _summary(skipped=skipped)

    recipients = [
        Recipient(email=s.email, subscription_id=s.id)
        for s in subscriptions
        if s.id in pending_updates
    ]
    week_start = now - timedelta(days=7)

    def render(recipient: Recipient) -> dict:
        urls = build_urls(project.magic_link_token, recipient.email)
        updates = pending_updates[recipient.subscription_id]
        if frequency == "weekly":
            return build_weekly_digest(project, updates, urls, week_start, now)
        return build_daily_digest(project, updates, urls, digest_date=now)

    results = await send_batch(recipients, render)
    summary = await _record_results(results, now)
    summary["skipped"] = skipped

    logger.info(
        "%s digest for project %s: %d sent, %d failed, %d skipped",
        frequency.capitalize(), project_id, summary["sent"], summary["failed"], skipped,
    )
    return summary


def queue_scheduled_digests(frequency: str) -> list[Job]:
    """Enqueue one digest job per project with at least one *frequency* subscriber."""
    job_type = "{}_digest".format(frequency)
    project_ids = get_project_ids_with_subscribers(frequency)

    jobs = [enqueue_job(job_type, {"project_id": pid}) for pid in project_ids]
    logger.info("Queued %d %s digest jobs", len(jobs), frequency)
    return jobs


def queue_daily_digests() -> list[Job]:
    return queue_scheduled_digests("daily")


def queue_weekly_digests() -> list[Job]:
    return queue_scheduled_digests("weekly")


# ---------------------------------------------------------------------------
# Job processing
# ---------------------------------------------------------------------------

async def _dispatch(job: Job) -> dict:
    if job.type == "instant_digest":
        return await process_instant_digest(job.payload)
    if job.type == "daily_digest":
        return await process_scheduled_digest(job.payload, "daily")
    if job.type == "weekly_digest":
        return await process_scheduled_digest(job.payload, "weekly")
    raise DigestError("Unknown job type: {}".format(job.type))


async def process_job(job: Job) -> bool:
    """Claim and run a single job. Returns True if it completed.

    Partial send failures still complete the job; the affected subscribers
    keep their watermark and are picked up by their next digest. Any
    exception sends the job down the retry path.
    """
    if not await asyncio.to_thread(mark_job_processing, job.id):
        logger.info("Job %s already claimed, skipping", job.id)
        return False

    try:
        await _dispatch(job)
    except Exception as e:
        logger.exception("Job %s (%s) failed", job.id, job.type)
        await asyncio.to_thread(mark_job_failed, job.id, str(e) or e.__class__.__name__)
        return False

    await asyncio.to_thread(mark_job_completed, job.id)
    return True


async def run_job_processor(limit: int = JOB_BATCH_SIZE) -> dict:
    """Process up to *limit* ready jobs, one after another."""
    jobs = await asyncio.to_thread(claim_ready_jobs, limit)
    completed = 0
    for job in jobs:
        if await process_job(job):
            completed += 1

    if jobs:
        logger.info("Processed %d jobs: %d completed, %d not completed", len(jobs), completed, len(jobs) - completed)
    return {"processed": len(jobs), "completed": completed, "failed": len(jobs) - completed}
