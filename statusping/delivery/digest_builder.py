"""Build notification emails (subject, HTML, plain text) for projects.

HTML comes from the Jinja2 templates next to this module; the plain-text
alternative is assembled line by line. All builders return
``{"subject": str, "html": str, "text": str}``.
"""

import logging
import re
from collections import OrderedDict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote

from jinja2 import Environment, FileSystemLoader

from statusping.config import APP_URL, DAILY_DIGEST_HOUR, WEEKLY_DIGEST_HOUR
from statusping.database import utcnow
from statusping.models import Project, Update

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"

DEFAULT_BRAND_COLOR = "#6366f1"
DAILY_DISPLAY_LIMIT = 10
WEEKLY_HIGHLIGHT_LIMIT = 5
INSTANT_LINK_DESCRIPTION_CHARS = 100

_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=True,
)

FREQUENCY_DESCRIPTIONS = {
    "instant": (
        "Instant updates",
        "You'll get an email as soon as a new update is posted.",
    ),
    "daily": (
        "Daily digest",
        "Once a day, around {:02d}:00 UTC, you'll get a summary of anything new.".format(DAILY_DIGEST_HOUR),
    ),
    "weekly": (
        "Weekly summary",
        "Every Sunday around {:02d}:00 UTC you'll get a recap of the week.".format(WEEKLY_DIGEST_HOUR),
    ),
}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def ensure_valid_color(color: Optional[str]) -> str:
    """Return *color* if it is a ``#rrggbb`` value, otherwise the default brand color."""
    if not color or not _COLOR_RE.match(color):
        return DEFAULT_BRAND_COLOR
    return color


def build_urls(project_token: str, email: str) -> Dict[str, str]:
    """Return the timeline, unsubscribe and preferences URLs for a recipient."""
    base_url = APP_URL.rstrip("/")
    encoded_email = quote(email, safe="")
    return {
        "timeline_url": "{}/p/{}".format(base_url, project_token),
        "unsubscribe_url": "{}/p/{}/unsubscribe?email={}".format(base_url, project_token, encoded_email),
        "manage_preferences_url": "{}/p/{}?email={}".format(base_url, project_token, encoded_email),
    }


def _plural(count: int, word: str) -> str:
    return "{} {}{}".format(count, word, "" if count == 1 else "s")


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length].strip() + "..."


def _format_long(value: Optional[datetime]) -> str:
    return value.strftime("%A, %B %-d at %-I:%M %p UTC") if value else ""


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%-I:%M %p") if value else ""


def _format_day(value: Optional[datetime]) -> str:
    return value.strftime("%a, %b %-d") if value else ""


def _format_range(start: datetime, end: datetime) -> str:
    return "{} - {}".format(start.strftime("%b %-d"), end.strftime("%b %-d"))


def _branding(project: Project) -> dict:
    return {
        "project_name": project.name,
        "brand_color": ensure_valid_color(project.branding_color),
        "logo_url": project.branding_logo_url,
    }


def _text_footer(unsubscribe_url: Optional[str] = None, manage_preferences_url: Optional[str] = None) -> List[str]:
    lines = ["---"]
    if manage_preferences_url:
        lines.append("Manage preferences: {}".format(manage_preferences_url))
    if unsubscribe_url:
        lines.append("Unsubscribe: {}".format(unsubscribe_url))
    lines.append("Powered by StatusPing")
    return lines


def _media_indicators(update: Update) -> List[str]:
    indicators = []
    if update.images:
        indicators.append(_plural(len(update.images), "image"))
    if update.link:
        indicators.append("1 link")
    return indicators


# ---------------------------------------------------------------------------
# Instant update
# ---------------------------------------------------------------------------

def build_instant_update(project: Project, update: Update, urls: Dict[str, str]) -> Dict[str, str]:
    """Build the email sent to instant subscribers when a single update is posted."""
    subject = "New update on {}".format(project.name)
    posted = _format_long(update.created_at)

    link_description = None
    if update.link and update.link.description:
        link_description = _truncate(update.link.description, INSTANT_LINK_DESCRIPTION_CHARS)

    html = _env.get_template("instant_update.html").render(
        subject=subject,
        preheader=update.content[:100],
        posted=posted,
        update=update,
        link_description=link_description,
        timeline_url=urls["timeline_url"],
        unsubscribe_url=urls["unsubscribe_url"],
        **_branding(project),
    )

    lines = []
    lines.append("{} - New Update".format(project.name))
    lines.append("=" * 40)
    lines.append("")
    if posted:
        lines.append("Posted: {}".format(posted))
        lines.append("")
    lines.append(update.content)
    if update.images:
        lines.append("")
        lines.append("{} attached".format(_plural(len(update.images), "image")))
    if update.link:
        lines.append("")
        lines.append("Link: {} ({})".format(update.link.title or update.link.url, update.link.url))
    lines.append("")
    lines.append("View on timeline: {}".format(urls["timeline_url"]))
    lines.append("")
    lines.extend(_text_footer(unsubscribe_url=urls["unsubscribe_url"]))

    return {"subject": subject, "html": html, "text": "\n".join(lines)}


# ---------------------------------------------------------------------------
# Daily digest
# ---------------------------------------------------------------------------

def build_daily_digest(
    project: Project,
    updates: List[Update],
    urls: Dict[str, str],
    digest_date: Optional[datetime] = None,
) -> Dict[str, str]:
    """Build a daily digest covering every update in *updates*.

    Only the first DAILY_DISPLAY_LIMIT updates are listed; the rest are
    summarised as a count.
    """
    digest_date = digest_date or utcnow()
    count = len(updates)
    subject = "{} on {}".format(_plural(count, "new update"), project.name)
    date_str = digest_date.strftime("%A, %B %-d, %Y")

    shown = updates[:DAILY_DISPLAY_LIMIT]
    items = [
        {
            "time": _format_time(u.created_at),
            "preview": _truncate(u.content, 150),
            "indicators": _media_indicators(u),
        }
        for u in shown
    ]
    remaining = count - len(shown)

    html = _env.get_template("daily_digest.html").render(
        subject=subject,
        preheader="{} on {}".format(_plural(count, "new update"), project.name),
        date_str=date_str,
        update_count=count,
        items=items,
        remaining=remaining,
        timeline_url=urls["timeline_url"],
        unsubscribe_url=urls["unsubscribe_url"],
        manage_preferences_url=urls.get("manage_preferences_url"),
        **_branding(project),
    )

    lines = []
    lines.append("{} - Daily Digest".format(project.name))
    lines.append(date_str)
    lines.append("=" * 40)
    lines.append("")
    lines.append(_plural(count, "new update"))
    for item in items:
        lines.append("")
        lines.append("[{}] {}".format(item["time"], item["preview"]))
        if item["indicators"]:
            lines.append("  {}".format(", ".join(item["indicators"])))
    if remaining:
        lines.append("")
        lines.append("...and {} more".format(_plural(remaining, "update")))
    lines.append("")
    lines.append("View all updates: {}".format(urls["timeline_url"]))
    lines.append("")
    lines.extend(_text_footer(urls["unsubscribe_url"], urls.get("manage_preferences_url")))

    return {"subject": subject, "html": html, "text": "\n".join(lines)}


# ---------------------------------------------------------------------------
# Weekly digest
# ---------------------------------------------------------------------------

def _group_by_day(updates: List[Update]) -> "OrderedDict[str, List[Update]]":
    groups = OrderedDict()
    for update in updates:
        if not update.created_at:
            continue
        groups.setdefault(update.created_at.date().isoformat(), []).append(update)
    return groups


def _daily_activity(grouped: "OrderedDict[str, List[Update]]", week_end: datetime) -> List[dict]:
    """Update counts for the seven days ending on (and including) *week_end*."""
    activity = []
    for offset in range(6, -1, -1):
        day = week_end - timedelta(days=offset)
        activity.append({
            "label": day.strftime("%a"),
            "count": len(grouped.get(day.date().isoformat(), [])),
        })
    return activity


def build_weekly_digest(
    project: Project,
    updates: List[Update],
    urls: Dict[str, str],
    week_start: datetime,
    week_end: datetime,
) -> Dict[str, str]:
    """Build a weekly summary.

    ``week_start``/``week_end`` only label the email; *updates* may reach
    further back when the subscriber missed earlier digests.
    """
    date_range = _format_range(week_start, week_end)
    count = len(updates)
    subject = "Your weekly summary for {} ({})".format(project.name, date_range)

    grouped = _group_by_day(updates)
    image_count = sum(len(u.images) for u in updates)
    link_count = sum(1 for u in updates if u.link)

    stats = [
        {"value": count, "label": "update" if count == 1 else "updates"},
        {"value": len(grouped), "label": "day with activity" if len(grouped) == 1 else "days with activity"},
    ]
    if image_count:
        stats.append({"value": image_count, "label": "image" if image_count == 1 else "images"})
    if link_count:
        stats.append({"value": link_count, "label": "link" if link_count == 1 else "links"})

    highlights = [
        {"day": _format_day(u.created_at), "preview": _truncate(u.content, 120)}
        for u in updates[:WEEKLY_HIGHLIGHT_LIMIT]
    ]
    remaining = count - len(highlights)

    activity = _daily_activity(grouped, week_end)

    html = _env.get_template("weekly_digest.html").render(
        subject=subject,
        preheader="{} this week on {}".format(_plural(count, "update"), project.name),
        date_range=date_range,
        stats=stats,
        highlights=highlights,
        remaining=remaining,
        activity=activity,
        timeline_url=urls["timeline_url"],
        unsubscribe_url=urls["unsubscribe_url"],
        manage_preferences_url=urls.get("manage_preferences_url"),
        **_branding(project),
    )

    lines = []
    lines.append("{} - Weekly Summary".format(project.name))
    lines.append(date_range)
    lines.append("=" * 40)
    lines.append("")
    lines.append(" | ".join("{} {}".format(s["value"], s["label"]) for s in stats))
    lines.append("")
    lines.append("HIGHLIGHTS")
    lines.append("-" * 10)
    for i, item in enumerate(highlights):
        if i:
            lines.append("")
            lines.append("---")
        lines.append("")
        lines.append("[{}]".format(item["day"]))
        lines.append(item["preview"])
    if remaining:
        lines.append("")
        lines.append("...and {}".format(_plural(remaining, "more update")))
    lines.append("")
    lines.append("Catch up on everything: {}".format(urls["timeline_url"]))
    lines.append("")
    lines.extend(_text_footer(urls["unsubscribe_url"], urls.get("manage_preferences_url")))

    return {"subject": subject, "html": html, "text": "\n".join(lines)}


# ---------------------------------------------------------------------------
# Subscription confirmation
# ---------------------------------------------------------------------------

def build_subscription_confirmed(project: Project, frequency: str, urls: Dict[str, str]) -> Dict[str, str]:
    """Build the confirmation sent after someone subscribes or changes frequency."""
    title, description = FREQUENCY_DESCRIPTIONS.get(frequency, FREQUENCY_DESCRIPTIONS["instant"])
    subject = "You're subscribed to {}".format(project.name)

    html = _env.get_template("subscription_confirmed.html").render(
        subject=subject,
        preheader="You'll now receive {} for {}".format(title.lower(), project.name),
        frequency_title=title,
        frequency_description=description,
        timeline_url=urls["timeline_url"],
        unsubscribe_url=urls["unsubscribe_url"],
        manage_preferences_url=urls.get("manage_preferences_url"),
        **_branding(project),
    )

    lines = []
    lines.append("{} - Subscription Confirmed".format(project.name))
    lines.append("=" * 40)
    lines.append("")
    lines.append("You're subscribed to updates for {}.".format(project.name))
    lines.append("")
    lines.append("Frequency: {}".format(title))
    lines.append(description)
    lines.append("")
    lines.append("View the timeline: {}".format(urls["timeline_url"]))
    lines.append("")
    lines.extend(_text_footer(urls["unsubscribe_url"], urls.get("manage_preferences_url")))

    return {"subject": subject, "html": html, "text": "\n".join(lines)}
