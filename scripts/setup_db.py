#!/usr/bin/env python3
"""Create the StatusPing tables (projects, updates, subscriptions, job queue)."""

import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from statusping.config import DATABASE_PATH, DATABASE_URL
from statusping.database import init_db


def main():
    target = "PostgreSQL (DATABASE_URL)" if DATABASE_URL else DATABASE_PATH
    print(f"Initializing database at {target}...")
    init_db()
    print("Database initialized successfully!")


if __name__ == "__main__":
    main()
