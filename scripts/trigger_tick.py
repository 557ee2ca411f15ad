#!/usr/bin/env python3
"""Run one scheduler tick via the web API.

For deployments where an external cron drives the scheduler (set
SCHEDULER_ENABLED=false on the web app). Makes an HTTP POST to
/api/scheduler/tick with the CRON_SECRET for authentication.

Usage:
    python scripts/trigger_tick.py
    python scripts/trigger_tick.py --base-url https://statusping.example.com

Environment variables:
    CRON_SECRET   shared secret that the API checks
    BASE_URL      base URL of the running web app (default: http://localhost:8000)
"""
import argparse
import logging
import os
import sys
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Trigger one StatusPing scheduler tick")
    parser.add_argument(
        "--base-url",
        default=os.getenv("BASE_URL", "http://localhost:8000"),
        help="Base URL of the web app",
    )
    args = parser.parse_args()

    cron_secret = os.getenv("CRON_SECRET", "")
    if not cron_secret:
        logger.error("CRON_SECRET environment variable is not set")
        sys.exit(1)

    url = "{}/api/scheduler/tick".format(args.base_url.rstrip("/"))
    logger.info("Triggering scheduler tick at %s", url)

    req = Request(url, method="POST", data=b"")
    req.add_header("X-Cron-Secret", cron_secret)
    req.add_header("Content-Type", "application/json")

    try:
        with urlopen(req, timeout=300) as resp:
            body = resp.read().decode()
            logger.info("Response (%d): %s", resp.status, body)
    except HTTPError as e:
        body = e.read().decode()
        logger.error("HTTP %d: %s", e.code, body)
        sys.exit(1)
    except URLError as e:
        logger.error("Request failed: %s", e.reason)
        sys.exit(1)


if __name__ == "__main__":
    main()
