#!/usr/bin/env python3
"""Render a notification email for a project and save an HTML preview.

Uses the project's real updates and branding.

Usage:
    python scripts/preview_email.py 1 daily                  # Save HTML preview to data/
    python scripts/preview_email.py 1 weekly --days 14       # Include two weeks of updates
    python scripts/preview_email.py 1 instant --send you@example.com
"""
import argparse
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path so we can import statusping
sys.path.insert(0, str(Path(__file__).parent.parent))

from statusping.config import DATA_DIR
from statusping.database import get_project, get_updates_since, init_db, utcnow
from statusping.delivery.digest_builder import (
    build_daily_digest,
    build_instant_update,
    build_subscription_confirmed,
    build_urls,
    build_weekly_digest,
)
from statusping.delivery.email_sender import send_email

KINDS = ("instant", "daily", "weekly", "confirmation")


def main():
    parser = argparse.ArgumentParser(description="Build and preview a notification email")
    parser.add_argument("project_id", type=int)
    parser.add_argument("kind", choices=KINDS)
    parser.add_argument("--days", type=int, default=7, help="How far back to look for updates")
    parser.add_argument("--send", metavar="EMAIL", help="Also send the email to this address")
    args = parser.parse_args()

    init_db()
    project = get_project(args.project_id)
    if project is None:
        print("No project with id {}".format(args.project_id))
        sys.exit(1)

    now = utcnow()
    recipient = args.send or "preview@example.com"
    urls = build_urls(project.magic_link_token, recipient)
    updates = get_updates_since(project.id, now - timedelta(days=args.days))

    if args.kind != "confirmation" and not updates:
        print("No updates in the last {} days. Try increasing --days.".format(args.days))
        return

    if args.kind == "instant":
        email = build_instant_update(project, updates[0], urls)
    elif args.kind == "daily":
        email = build_daily_digest(project, updates, urls, digest_date=now)
    elif args.kind == "weekly":
        email = build_weekly_digest(project, updates, urls, now - timedelta(days=7), now)
    else:
        email = build_subscription_confirmed(project, "daily", urls)

    preview_path = DATA_DIR / "preview_{}_{}.html".format(project.id, args.kind)
    preview_path.write_text(email["html"])
    print("Subject: {}".format(email["subject"]))
    print("HTML preview saved to {}\n".format(preview_path))
    print(email["text"])

    if args.send:
        result = send_email(args.send, email["subject"], email["html"], email["text"])
        if result.success:
            print("\nSent to {} ({})".format(args.send, result.message_id))
        else:
            print("\nSend failed: {}".format(result.error))
            sys.exit(1)


if __name__ == "__main__":
    main()
