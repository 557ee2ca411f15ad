"""Durable job queue backed by the ``job_queue`` table.

Delivery is at-least-once: a job is claimed by flipping it from ``pending``
to ``processing``, and a failure puts it back to ``pending`` with a
quadratic backoff until MAX_JOB_ATTEMPTS is reached, at which point it is
parked as ``failed`` for manual inspection.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from statusping.config import MAX_JOB_ATTEMPTS, STALE_JOB_MINUTES
from statusping.database import _in_clause, _insert_and_get_id, _parse_dt, _q, _ts, get_connection, utcnow
from statusping.models import JOB_STATUSES, JOB_TYPES, Job

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")


def _row_to_job(row) -> Job:
    return Job(
        id=row["id"],
        type=row["type"],
        payload=json.loads(row["payload"]) if row["payload"] else {},
        status=row["status"],
        attempts=row["attempts"],
        scheduled_for=_parse_dt(row["scheduled_for"]),
        last_error=row["last_error"],
        created_at=_parse_dt(row["created_at"]),
    )


def enqueue_job(job_type: str, payload: dict, scheduled_for: Optional[datetime] = None) -> Job:
    """Insert a pending job. No deduplication is performed."""
    if job_type not in JOB_TYPES:
        raise ValueError("Unknown job type: {}".format(job_type))

    now = utcnow()
    scheduled_for = scheduled_for or now

    conn = get_connection()
    cursor = conn.cursor()
    job_id = _insert_and_get_id(
        cursor,
        """INSERT INTO job_queue (type, payload, status, attempts, scheduled_for, created_at)
           VALUES (?, ?, 'pending', 0, ?, ?)""",
        (job_type, json.dumps(payload), _ts(scheduled_for), _ts(now)),
    )
    conn.commit()
    conn.close()

    logger.info("Enqueued job %s (%s)", job_id, job_type)
    return Job(
        id=job_id,
        type=job_type,
        payload=payload,
        scheduled_for=scheduled_for,
        created_at=now,
    )


def claim_ready_jobs(limit: int = 10, now: Optional[datetime] = None) -> list[Job]:
    """Return up to *limit* pending jobs that are due, oldest schedule first.

    Status is not changed here; callers claim each job with
    mark_job_processing() before working on it.
    """
    now = now or utcnow()
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("""
            SELECT * FROM job_queue
            WHERE status = 'pending' AND scheduled_for <= ?
            ORDER BY scheduled_for, id
            LIMIT ?
        """),
        (_ts(now), limit),
    )
    rows = cursor.fetchall()
    conn.close()

    return [_row_to_job(row) for row in rows]


def mark_job_processing(job_id: int) -> bool:
    """Claim a pending job and count the attempt.

    The update is conditional on the job still being pending, so only one
    caller can win the claim. Returns True if this caller claimed it.
    """
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("""
            UPDATE job_queue SET status = 'processing', attempts = attempts + 1
            WHERE id = ? AND status = 'pending'
        """),
        (job_id,),
    )
    claimed = cursor.rowcount > 0

    conn.commit()
    conn.close()
    return claimed


def mark_job_completed(job_id: int):
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(_q("UPDATE job_queue SET status = 'completed' WHERE id = ?"), (job_id,))

    conn.commit()
    conn.close()
    logger.info("Job %s completed", job_id)


def mark_job_failed(job_id: int, reason: str, now: Optional[datetime] = None) -> Optional[Job]:
    """Record a failed attempt and either reschedule the job or park it.

    With ``attempts`` below MAX_JOB_ATTEMPTS the job goes back to pending,
    due ``attempts**2`` minutes from now (1, 4, 9 ...). Otherwise it becomes
    ``failed`` and its scheduled_for is left untouched.
    """
    now = now or utcnow()
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(_q("SELECT * FROM job_queue WHERE id = ?"), (job_id,))
    row = cursor.fetchone()
    if not row:
        conn.close()
        logger.warning("Cannot mark missing job %s as failed", job_id)
        return None

    job = _row_to_job(row)
    if job.attempts >= MAX_JOB_ATTEMPTS:
        cursor.execute(
            _q("UPDATE job_queue SET status = 'failed', last_error = ? WHERE id = ?"),
            (reason, job_id),
        )
        job.status = "failed"
        logger.error("Job %s failed permanently after %d attempts: %s", job_id, job.attempts, reason)
    else:
        retry_at = now + timedelta(minutes=job.attempts ** 2)
        cursor.execute(
            _q("UPDATE job_queue SET status = 'pending', scheduled_for = ?, last_error = ? WHERE id = ?"),
            (_ts(retry_at), reason, job_id),
        )
        job.status = "pending"
        job.scheduled_for = retry_at
        logger.warning(
            "Job %s failed, will retry at %s (attempt %d/%d): %s",
            job_id, retry_at.isoformat(), job.attempts, MAX_JOB_ATTEMPTS, reason,
        )
    job.last_error = reason

    conn.commit()
    conn.close()
    return job


def purge_jobs_older_than(days: int = 7, now: Optional[datetime] = None) -> int:
    """Delete completed/failed jobs created more than *days* ago. Returns the count deleted."""
    cutoff = (now or utcnow()) - timedelta(days=days)
    conn = get_connection()
    cursor = conn.cursor()

    clause, params = _in_clause("status", TERMINAL_STATUSES)
    cursor.execute(
        _q(f"DELETE FROM job_queue WHERE {clause} AND created_at < ?"),
        params + (_ts(cutoff),),
    )
    deleted = cursor.rowcount

    conn.commit()
    conn.close()

    if deleted:
        logger.info("Cleaned up %d old jobs (older than %d days)", deleted, days)
    return deleted


def get_job_stats() -> dict:
    """Return job counts grouped by status and by type."""
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute("SELECT status, COUNT(*) AS total FROM job_queue GROUP BY status")
    status_rows = cursor.fetchall()
    cursor.execute("SELECT type, COUNT(*) AS total FROM job_queue GROUP BY type")
    type_rows = cursor.fetchall()
    conn.close()

    by_status = {status: 0 for status in JOB_STATUSES}
    for row in status_rows:
        by_status[row["status"]] = int(row["total"])

    return {
        "by_status": by_status,
        "by_type": {row["type"]: int(row["total"]) for row in type_rows},
        "total": sum(by_status.values()),
    }


# ---------------------------------------------------------------------------
# Administrative helpers
# ---------------------------------------------------------------------------

def get_job(job_id: int) -> Optional[Job]:
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(_q("SELECT * FROM job_queue WHERE id = ?"), (job_id,))
    row = cursor.fetchone()
    conn.close()

    return _row_to_job(row) if row else None


def list_jobs(status: Optional[str] = None, limit: int = 20) -> list[Job]:
    """Return recent jobs, newest first, optionally filtered by status."""
    conn = get_connection()
    cursor = conn.cursor()

    if status:
        cursor.execute(
            _q("SELECT * FROM job_queue WHERE status = ? ORDER BY created_at DESC, id DESC LIMIT ?"),
            (status, limit),
        )
    else:
        cursor.execute(
            _q("SELECT * FROM job_queue ORDER BY created_at DESC, id DESC LIMIT ?"),
            (limit,),
        )
    rows = cursor.fetchall()
    conn.close()

    return [_row_to_job(row) for row in rows]


def retry_job(job_id: int, now: Optional[datetime] = None) -> Optional[Job]:
    """Put a failed or stale job back on the queue, due immediately.

    A ``processing`` job only counts as stale once it has been due for
    STALE_JOB_MINUTES, which covers jobs orphaned by a crash mid-run.
    Returns None when the job is in neither state. The attempt counter is
    kept, so a job that already used MAX_JOB_ATTEMPTS gets one more try
    and is parked again if that fails.
    """
    now = now or utcnow()
    stale_before = now - timedelta(minutes=STALE_JOB_MINUTES)
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(
        _q("""
            UPDATE job_queue SET status = 'pending', scheduled_for = ?
            WHERE id = ?
              AND (status = 'failed' OR (status = 'processing' AND scheduled_for <= ?))
        """),
        (_ts(now), job_id, _ts(stale_before)),
    )
    retried = cursor.rowcount > 0
    conn.commit()
    conn.close()

    if not retried:
        return None
    logger.info("Job %s reset for retry", job_id)
    return get_job(job_id)


def delete_job(job_id: int) -> bool:
    conn = get_connection()
    cursor = conn.cursor()

    cursor.execute(_q("DELETE FROM job_queue WHERE id = ?"), (job_id,))
    deleted = cursor.rowcount > 0

    conn.commit()
    conn.close()
    return deleted
