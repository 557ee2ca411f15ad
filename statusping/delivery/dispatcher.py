"""Fan out rendered emails to many recipients with bounded concurrency."""

import asyncio
import logging
from typing import Callable, Dict

from statusping.config import EMAIL_CONCURRENCY
from statusping.models import Recipient, SendResult
from statusping.delivery.email_sender import send_email

logger = logging.getLogger(__name__)


async def send_rendered(to_address: str, rendered: Dict[str, str]) -> SendResult:
    """Send one rendered email; the blocking SMTP call runs in a worker thread."""
    return await asyncio.to_thread(
        send_email,
        to_address,
        rendered["subject"],
        rendered["html"],
        rendered["text"],
    )


async def _send_one(recipient: Recipient, render_fn: Callable[[Recipient], Dict[str, str]]) -> SendResult:
    try:
        rendered = render_fn(recipient)
    except Exception as e:
        logger.exception("Failed to render email for %s", recipient.email)
        return SendResult(success=False, error="Render error: {}".format(e))

    try:
        return await send_rendered(recipient.email, rendered)
    except Exception as e:
        logger.exception("Unexpected error sending to %s", recipient.email)
        return SendResult(success=False, error=str(e))


async def send_batch(
    recipients: list[Recipient],
    render_fn: Callable[[Recipient], Dict[str, str]],
    concurrency: int = EMAIL_CONCURRENCY,
) -> Dict[int, SendResult]:
    """Send a personalised email to every recipient.

    Recipients are processed in chunks of *concurrency*; each chunk is
    awaited in full before the next starts. A failure for one recipient
    never stops the others. Returns results keyed by subscription id.
    """
    concurrency = max(1, concurrency)
    results: Dict[int, SendResult] = {}

    for start in range(0, len(recipients), concurrency):
        chunk = recipients[start:start + concurrency]
        outcomes = await asyncio.gather(*(_send_one(r, render_fn) for r in chunk))
        for recipient, result in zip(chunk, outcomes):
            results[recipient.subscription_id] = result

    failed = sum(1 for r in results.values() if not r.success)
    if failed:
        logger.warning("Batch finished: %d sent, %d failed", len(results) - failed, failed)
    else:
        logger.info("Batch finished: %d sent", len(results))
    return results
