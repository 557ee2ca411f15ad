import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Header
from fastapi.responses import JSONResponse

from statusping.config import (
    ADMIN_SECRET,
    CRON_SECRET,
    EMAIL_FROM,
    JOB_RETENTION_DAYS,
    LOG_LEVEL,
    MAX_JOB_ATTEMPTS,
    SCHEDULER_ENABLED,
    SCHEDULER_INTERVAL_SECONDS,
    SMTP_HOST,
    STALE_JOB_MINUTES,
)
from statusping.database import (
    create_update,
    get_project,
    get_project_by_token,
    get_subscription,
    get_subscriptions_for_project,
    init_db,
    remove_subscription,
    remove_subscription_by_id,
    upsert_subscription,
    utcnow,
)
from statusping.delivery.digest_builder import (
    build_daily_digest,
    build_instant_update,
    build_subscription_confirmed,
    build_urls,
    build_weekly_digest,
)
from statusping.delivery.dispatcher import send_rendered
from statusping.delivery.email_sender import is_email_configured
from statusping.jobs.digest import trigger_instant_digest
from statusping.jobs.queue import (
    delete_job,
    get_job,
    get_job_stats,
    list_jobs,
    purge_jobs_older_than,
    retry_job,
)
from statusping.jobs.scheduler import Scheduler
from statusping.models import FREQUENCIES, JOB_STATUSES, Link, Project, Subscription, Update
from statusping.web.schemas import SampleEmailRequest, SubscribeRequest, UpdateCreateRequest

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SAMPLE_EMAIL_KINDS = ("instant", "daily", "weekly", "confirmation")

scheduler = Scheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    await asyncio.to_thread(init_db)

    task = None
    if SCHEDULER_ENABLED:
        task = asyncio.create_task(scheduler.run_forever(SCHEDULER_INTERVAL_SECONDS))
    else:
        logger.info("In-process scheduler disabled; use POST /api/scheduler/tick")

    yield

    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    logger.info("StatusPing notifications shutting down")


app = FastAPI(title="StatusPing Notifications", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _check_secret(provided: Optional[str], expected: str, header: str):
    """Return an error response if the shared-secret header is wrong, else None."""
    if not expected:
        return JSONResponse(
            {"error": "{} is not configured on the server".format(header)},
            status_code=500,
        )
    if provided != expected:
        return JSONResponse({"error": "Invalid or missing {}".format(header)}, status_code=401)
    return None


def _require_admin(x_admin_secret: Optional[str]):
    return _check_secret(x_admin_secret, ADMIN_SECRET, "X-Admin-Secret")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _update_to_dict(update: Update) -> dict:
    return {
        "id": update.id,
        "project_id": update.project_id,
        "content": update.content,
        "images": [{"id": i.id, "url": i.url, "filename": i.filename} for i in update.images],
        "link": {"url": update.link.url, "title": update.link.title} if update.link else None,
        "created_at": _iso(update.created_at),
    }


def _subscription_to_dict(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "email": subscription.email,
        "frequency": subscription.frequency,
        "last_sent_at": _iso(subscription.last_sent_at),
        "created_at": _iso(subscription.created_at),
    }


def _trigger_instant(project_id: int, update_id: int):
    """Background task: queue the instant digest without blocking the request."""
    try:
        trigger_instant_digest(project_id, update_id)
    except Exception:
        logger.exception("Failed to queue instant digest for update %s", update_id)


async def _send_confirmation(project: Project, email: str, frequency: str):
    """Background task: send the subscription confirmation email."""
    try:
        urls = build_urls(project.magic_link_token, email)
        result = await send_rendered(email, build_subscription_confirmed(project, frequency, urls))
    except Exception:
        logger.exception("Failed to send subscription confirmation to %s", email)
        return
    if not result.success:
        logger.error("Subscription confirmation to %s failed: %s", email, result.error)


def _sample_updates(project_id: int, count: int) -> list[Update]:
    now = utcnow()
    samples = [
        "Finished the homepage redesign. Take a look at the new hero section and let us know what you think.",
        "Wrapped up the API integration for the payments flow.",
        "Uploaded the latest round of photos from the site visit.",
        "Fixed the layout issues on mobile that came up in last week's review.",
        "Started work on the reporting dashboard.",
        "Shared the updated timeline for the next milestone.",
        "Reviewed copy changes with the content team.",
    ]
    updates = []
    for i in range(count):
        update = Update(
            project_id=project_id,
            content=samples[i % len(samples)],
            id=i + 1,
            created_at=now - timedelta(hours=6 * i + 1),
        )
        if i == 0:
            update.link = Link(update_id=update.id, url="https://example.com/preview", title="Staging preview")
        updates.append(update)
    return updates


# ---------------------------------------------------------------------------
# Health and scheduler tick
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/scheduler/tick")
async def scheduler_tick(x_cron_secret: str = Header(None)):
    """Run one scheduler tick.

    Protected by a shared secret passed in the ``X-Cron-Secret`` header, for
    deployments where an external cron drives the scheduler instead of the
    in-process loop.
    """
    error = _check_secret(x_cron_secret, CRON_SECRET, "X-Cron-Secret")
    if error:
        return error

    result = await scheduler.tick()
    return JSONResponse({"status": "ok", "ran": result["ran"], "jobs": result["jobs"]})


# ---------------------------------------------------------------------------
# Admin: jobs and digests
# ---------------------------------------------------------------------------

@app.get("/api/admin/jobs/status")
async def jobs_status(x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    stats = await asyncio.to_thread(get_job_stats)
    recent_failed = await asyncio.to_thread(list_jobs, status="failed", limit=10)
    state = await asyncio.to_thread(scheduler.state)
    return JSONResponse({
        "jobs": stats,
        "recent_failed": [job.to_dict() for job in recent_failed],
        "scheduler": state,
    })


@app.get("/api/admin/jobs")
async def jobs_list(status: Optional[str] = None, limit: int = 20, x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error
    if status and status not in JOB_STATUSES:
        return JSONResponse({"error": "Unknown status: {}".format(status)}, status_code=400)

    jobs = await asyncio.to_thread(list_jobs, status=status, limit=max(1, min(limit, 100)))
    return JSONResponse({"jobs": [job.to_dict() for job in jobs]})


@app.post("/api/admin/jobs/{job_id}/retry")
async def jobs_retry(job_id: int, x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    job = await asyncio.to_thread(get_job, job_id)
    if job is None:
        return JSONResponse({"error": "Job not found"}, status_code=404)
    if job.status not in ("failed", "processing"):
        return JSONResponse({"error": "Only failed or stuck processing jobs can be retried"}, status_code=400)

    retried = await asyncio.to_thread(retry_job, job_id)
    if retried is None and job.status == "processing":
        return JSONResponse(
            {"error": "Job is still processing; it can be retried once it has been due for {} minutes".format(
                STALE_JOB_MINUTES)},
            status_code=409,
        )
    if retried is None:
        return JSONResponse({"error": "Job is no longer failed"}, status_code=409)
    job = retried

    # Attempts are not reset, so a job past the limit gets a single try
    attempts_left = max(MAX_JOB_ATTEMPTS - job.attempts, 1)
    return JSONResponse({
        "message": "Job queued for retry",
        "attempts_left": attempts_left,
        "job": job.to_dict(),
    })


@app.delete("/api/admin/jobs/{job_id}")
async def jobs_delete(job_id: int, x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    if not await asyncio.to_thread(delete_job, job_id):
        return JSONResponse({"error": "Job not found"}, status_code=404)
    return JSONResponse({"message": "Job deleted", "job_id": job_id})


@app.post("/api/admin/jobs/cleanup")
async def jobs_cleanup(days: int = JOB_RETENTION_DAYS, x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error
    if days < 1:
        return JSONResponse({"error": "days must be at least 1"}, status_code=400)

    deleted = await asyncio.to_thread(purge_jobs_older_than, days)
    return JSONResponse({"message": "Cleaned up old jobs", "deleted": deleted, "days": days})


@app.post("/api/admin/digest/trigger-daily")
async def trigger_daily(x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    jobs = await asyncio.to_thread(scheduler.trigger_daily_digests)
    return JSONResponse({"message": "Daily digests queued", "queued": len(jobs), "job_ids": [j.id for j in jobs]})


@app.post("/api/admin/digest/trigger-weekly")
async def trigger_weekly(x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    jobs = await asyncio.to_thread(scheduler.trigger_weekly_digests)
    return JSONResponse({"message": "Weekly digests queued", "queued": len(jobs), "job_ids": [j.id for j in jobs]})


# ---------------------------------------------------------------------------
# Admin: email
# ---------------------------------------------------------------------------

@app.get("/api/admin/email/status")
async def email_status(x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    configured = is_email_configured()
    return JSONResponse({
        "configured": configured,
        "mode": "smtp" if configured else "development",
        "smtp_host": SMTP_HOST if configured else None,
        "from": EMAIL_FROM,
    })


@app.post("/api/admin/email/test")
async def email_test(payload: SampleEmailRequest, x_admin_secret: str = Header(None)):
    """Send a sample email of the given kind, branded for a real project if one is given."""
    error = _require_admin(x_admin_secret)
    if error:
        return error
    if not payload.email or not EMAIL_RE.match(payload.email):
        return JSONResponse({"error": "A valid email is required"}, status_code=400)
    if payload.kind not in SAMPLE_EMAIL_KINDS:
        return JSONResponse({"error": "Unknown email kind: {}".format(payload.kind)}, status_code=400)

    project = await asyncio.to_thread(get_project, payload.project_id) if payload.project_id else None
    if project is None:
        project = Project(name="Test Project", magic_link_token="test-token", id=0)

    urls = build_urls(project.magic_link_token, payload.email)
    now = utcnow()
    if payload.kind == "instant":
        rendered = build_instant_update(project, _sample_updates(project.id, 1)[0], urls)
    elif payload.kind == "daily":
        rendered = build_daily_digest(project, _sample_updates(project.id, 3), urls, digest_date=now)
    elif payload.kind == "weekly":
        rendered = build_weekly_digest(project, _sample_updates(project.id, 7), urls, now - timedelta(days=7), now)
    else:
        rendered = build_subscription_confirmed(project, "daily", urls)

    logger.info("Sending test %s email to %s", payload.kind, payload.email)
    result = await send_rendered(payload.email, rendered)
    if not result.success:
        return JSONResponse({"success": False, "error": result.error}, status_code=500)
    return JSONResponse({
        "success": True,
        "message": "Test {} email sent".format(payload.kind),
        "sent_to": payload.email,
        "message_id": result.message_id,
    })


# ---------------------------------------------------------------------------
# Project owner API
# ---------------------------------------------------------------------------

@app.post("/api/projects/{project_id}/updates")
async def post_update(
    project_id: int,
    payload: UpdateCreateRequest,
    background_tasks: BackgroundTasks,
    x_admin_secret: str = Header(None),
):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    if await asyncio.to_thread(get_project, project_id) is None:
        return JSONResponse({"error": "Project not found"}, status_code=404)

    update = await asyncio.to_thread(
        create_update,
        project_id,
        payload.content,
        images=[image.model_dump() for image in payload.images],
        link=payload.link.model_dump() if payload.link else None,
    )
    background_tasks.add_task(_trigger_instant, project_id, update.id)
    return JSONResponse({"update": _update_to_dict(update)}, status_code=201)


@app.get("/api/projects/{project_id}/subscribers")
async def list_subscribers(project_id: int, x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    if await asyncio.to_thread(get_project, project_id) is None:
        return JSONResponse({"error": "Project not found"}, status_code=404)

    subscriptions = await asyncio.to_thread(get_subscriptions_for_project, project_id)
    return JSONResponse({
        "subscribers": [_subscription_to_dict(s) for s in subscriptions],
        "count": len(subscriptions),
    })


@app.delete("/api/projects/{project_id}/subscribers/{subscription_id}")
async def delete_subscriber(project_id: int, subscription_id: int, x_admin_secret: str = Header(None)):
    error = _require_admin(x_admin_secret)
    if error:
        return error

    if not await asyncio.to_thread(remove_subscription_by_id, project_id, subscription_id):
        return JSONResponse({"error": "Subscriber not found"}, status_code=404)
    return JSONResponse({"message": "Subscriber removed"})


# ---------------------------------------------------------------------------
# Public subscription API
# ---------------------------------------------------------------------------

@app.post("/api/public/timeline/{token}/subscribe")
async def subscribe(token: str, payload: SubscribeRequest, background_tasks: BackgroundTasks):
    """Subscribe an email to a project's updates, or change its frequency."""
    if not payload.email:
        return JSONResponse({"error": "Email is required"}, status_code=400)
    if not EMAIL_RE.match(payload.email.strip()):
        return JSONResponse({"error": "Invalid email format"}, status_code=400)

    # Unknown frequencies fall back to instant
    frequency = payload.frequency if payload.frequency in FREQUENCIES else "instant"

    project = await asyncio.to_thread(get_project_by_token, token)
    if project is None:
        return JSONResponse({"error": "Project not found"}, status_code=404)

    subscription, created = await asyncio.to_thread(upsert_subscription, project.id, payload.email, frequency)
    background_tasks.add_task(_send_confirmation, project, subscription.email, frequency)

    if created:
        logger.info("New %s subscriber for project %s", frequency, project.id)
        return JSONResponse({"message": "Subscribed successfully", "frequency": frequency}, status_code=201)
    logger.info("Subscriber %s changed to %s for project %s", subscription.id, frequency, project.id)
    return JSONResponse({"message": "Subscription updated successfully", "frequency": frequency})


@app.delete("/api/public/timeline/{token}/unsubscribe")
async def unsubscribe(token: str, email: Optional[str] = None):
    if not email:
        return JSONResponse({"error": "Email is required"}, status_code=400)

    project = await asyncio.to_thread(get_project_by_token, token)
    if project is None:
        return JSONResponse({"error": "Project not found"}, status_code=404)

    if not await asyncio.to_thread(remove_subscription, project.id, email):
        return JSONResponse({"error": "Subscription not found"}, status_code=404)
    return JSONResponse({"message": "Unsubscribed successfully"})


@app.get("/api/public/timeline/{token}/subscription-status")
async def subscription_status(token: str, email: Optional[str] = None):
    if not email:
        return JSONResponse({"error": "Email query parameter is required"}, status_code=400)

    project = await asyncio.to_thread(get_project_by_token, token)
    if project is None:
        return JSONResponse({"error": "Project not found"}, status_code=404)

    subscription = await asyncio.to_thread(get_subscription, project.id, email)
    if subscription is None:
        return JSONResponse({"subscribed": False})
    return JSONResponse({"subscribed": True, "frequency": subscription.frequency})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("statusping.web.app:app", host="127.0.0.1", port=8000, reload=True)
