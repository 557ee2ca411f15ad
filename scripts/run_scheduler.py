#!/usr/bin/env python3
"""Run the notification scheduler as a standalone process.

Checks the daily/weekly/cleanup cadences and drains the job queue on every
tick. Use this instead of the in-process loop when the web app runs with
SCHEDULER_ENABLED=false.

Usage:
    python scripts/run_scheduler.py                 # Loop forever
    python scripts/run_scheduler.py --once          # Single tick, then exit
    python scripts/run_scheduler.py --interval 60   # Tick every 60 seconds
    python scripts/run_scheduler.py --state         # Print scheduler state and exit
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path

# Add project root to path so we can import statusping
sys.path.insert(0, str(Path(__file__).parent.parent))

from statusping.config import DATA_DIR, LOG_LEVEL, SCHEDULER_INTERVAL_SECONDS
from statusping.database import init_db
from statusping.jobs.scheduler import Scheduler

logger = logging.getLogger(__name__)


def setup_logging():
    """Configure logging to both console and a daily log file."""
    log_dir = DATA_DIR / "logs"
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / "scheduler_{}.log".format(date.today().isoformat())

    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file),
        ],
    )


def main():
    parser = argparse.ArgumentParser(
        description="Run the StatusPing notification scheduler"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=SCHEDULER_INTERVAL_SECONDS,
        help="Seconds between ticks (default: %(default)s)",
    )
    parser.add_argument(
        "--state",
        action="store_true",
        help="Print the scheduler state as JSON and exit",
    )
    args = parser.parse_args()

    setup_logging()
    init_db()
    scheduler = Scheduler()

    if args.state:
        print(json.dumps(scheduler.state(), indent=2))
        return

    if args.once:
        result = asyncio.run(scheduler.tick())
        logger.info("Tick complete: ran=%s jobs=%s", result["ran"], result["jobs"])
        return

    try:
        asyncio.run(scheduler.run_forever(args.interval))
    except KeyboardInterrupt:
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
