#!/usr/bin/env python3
"""Manage projects and their email subscribers.

CLI tool to create projects and to add, remove and list subscribers.
"""
import argparse
import sys
from pathlib import Path

# Add project root to path so we can import statusping
sys.path.insert(0, str(Path(__file__).parent.parent))

from statusping.config import APP_URL
from statusping.database import (
    count_subscriptions,
    create_project,
    get_project,
    get_subscriptions_for_project,
    init_db,
    list_projects,
    remove_subscription,
    upsert_subscription,
)
from statusping.models import FREQUENCIES


def _require_project(project_id):
    project = get_project(project_id)
    if project is None:
        print(f"No project with id {project_id}")
        sys.exit(1)
    return project


def cmd_create_project(args):
    """Create a project and print its public timeline URL."""
    project = create_project(
        args.name,
        description=args.description or "",
        branding_color=args.color,
    )
    print(f"Created project {project.name} (id={project.id})")
    print(f"Timeline: {APP_URL.rstrip('/')}/p/{project.magic_link_token}")


def cmd_projects(args):
    """Show all projects with their subscriber counts."""
    projects = list_projects()
    if not projects:
        print("No projects yet.")
        print("Run: python scripts/manage_subscriptions.py create-project NAME")
        return

    print(f"{'ID':<6} {'Name':<30} {'Subscribers':<12} {'Notifications'}")
    print("-" * 65)
    for project in projects:
        notifications = "on" if project.notifications_enabled else "off"
        print(f"{project.id:<6} {project.name:<30} {count_subscriptions(project.id):<12} {notifications}")


def cmd_list(args):
    """Show subscribers of a project."""
    project = _require_project(args.project_id)
    subs = get_subscriptions_for_project(project.id, frequency=args.frequency)

    if not subs:
        print(f"No subscribers for {project.name}.")
        return

    print(f"{'Frequency':<10} {'Email':<40} {'Last sent':<20} {'Created'}")
    print("-" * 85)
    for sub in subs:
        last_sent = sub.last_sent_at.strftime("%Y-%m-%d %H:%M") if sub.last_sent_at else "never"
        created = sub.created_at.strftime("%Y-%m-%d") if sub.created_at else "N/A"
        print(f"{sub.frequency:<10} {sub.email:<40} {last_sent:<20} {created}")

    print(f"\n{len(subs)} subscriber(s)")


def cmd_add(args):
    """Subscribe an email, or change the frequency of an existing subscriber."""
    project = _require_project(args.project_id)
    sub, created = upsert_subscription(project.id, args.email, args.frequency)
    if created:
        print(f"Subscribed {sub.email} to {project.name} ({sub.frequency}, id={sub.id})")
    else:
        print(f"Updated {sub.email} on {project.name} to {sub.frequency}")


def cmd_remove(args):
    """Unsubscribe an email from a project."""
    project = _require_project(args.project_id)
    if remove_subscription(project.id, args.email):
        print(f"Unsubscribed {args.email} from {project.name}")
    else:
        print(f"No subscription found for {args.email}")


def main():
    parser = argparse.ArgumentParser(description="Manage StatusPing projects and subscribers")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("create-project", help="Create a project")
    p.add_argument("name")
    p.add_argument("--description")
    p.add_argument("--color", help="Brand color as #rrggbb")
    p.set_defaults(func=cmd_create_project)

    p = subparsers.add_parser("projects", help="List projects")
    p.set_defaults(func=cmd_projects)

    p = subparsers.add_parser("list", help="List subscribers of a project")
    p.add_argument("project_id", type=int)
    p.add_argument("--frequency", choices=FREQUENCIES)
    p.set_defaults(func=cmd_list)

    p = subparsers.add_parser("add", help="Add or update a subscriber")
    p.add_argument("project_id", type=int)
    p.add_argument("email")
    p.add_argument("--frequency", choices=FREQUENCIES, default="instant")
    p.set_defaults(func=cmd_add)

    p = subparsers.add_parser("remove", help="Remove a subscriber")
    p.add_argument("project_id", type=int)
    p.add_argument("email")
    p.set_defaults(func=cmd_remove)

    args = parser.parse_args()
    init_db()
    args.func(args)


if __name__ == "__main__":
    main()
