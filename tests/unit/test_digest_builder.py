"""Tests for email rendering."""
from datetime import timedelta

from statusping.delivery.digest_builder import (
    DEFAULT_BRAND_COLOR,
    _daily_activity,
    _group_by_day,
    build_daily_digest,
    build_instant_update,
    build_subscription_confirmed,
    build_urls,
    build_weekly_digest,
    ensure_valid_color,
)
from statusping.models import Image, Link, Project, Update


def _project(**kwargs):
    defaults = {"name": "Acme Website", "magic_link_token": "tok123", "id": 1}
    defaults.update(kwargs)
    return Project(**defaults)


def _updates(count, now):
    return [
        Update(project_id=1, content="Update number {}".format(i), id=i + 1, created_at=now - timedelta(hours=i))
        for i in range(count)
    ]


def test_ensure_valid_color():
    assert ensure_valid_color("#12abEF") == "#12abEF"
    assert ensure_valid_color(None) == DEFAULT_BRAND_COLOR
    assert ensure_valid_color("red") == DEFAULT_BRAND_COLOR
    assert ensure_valid_color("#fff") == DEFAULT_BRAND_COLOR


def test_build_urls_encodes_email(monkeypatch):
    monkeypatch.setattr("statusping.delivery.digest_builder.APP_URL", "https://app.statusping.test/")

    urls = build_urls("tok123", "jane+ops@example.com")

    assert urls["timeline_url"] == "https://app.statusping.test/p/tok123"
    assert urls["unsubscribe_url"] == "https://app.statusping.test/p/tok123/unsubscribe?email=jane%2Bops%40example.com"
    assert urls["manage_preferences_url"] == "https://app.statusping.test/p/tok123?email=jane%2Bops%40example.com"


def test_instant_update(fixed_now):
    update = Update(
        project_id=1,
        content="Shipped <b>checkout</b>",
        id=5,
        created_at=fixed_now,
        images=[Image(update_id=5, url="https://cdn.example.com/a.png")],
        link=Link(update_id=5, url="https://acme.example.com", title="Staging", description="x" * 150),
    )
    urls = build_urls("tok123", "a@x.com")

    email = build_instant_update(_project(branding_color="#ff0000"), update, urls)

    assert email["subject"] == "New update on Acme Website"
    assert "&lt;b&gt;checkout&lt;/b&gt;" in email["html"]
    assert "https://cdn.example.com/a.png" in email["html"]
    assert "#ff0000" in email["html"]
    assert "x" * 100 + "..." in email["html"]
    assert "Powered by StatusPing" in email["html"]
    assert "1 image attached" in email["text"]
    assert "Link: Staging (https://acme.example.com)" in email["text"]
    assert urls["unsubscribe_url"] in email["text"]


def test_daily_digest_truncates_display(fixed_now):
    urls = build_urls("tok123", "a@x.com")

    email = build_daily_digest(_project(), _updates(12, fixed_now), urls, digest_date=fixed_now)

    assert email["subject"] == "12 new updates on Acme Website"
    assert "Friday, March 15, 2024" in email["text"]
    assert "Update number 9" in email["text"]
    assert "Update number 10" not in email["text"]
    assert "...and 2 more updates" in email["text"]
    assert "...and 2 more updates" in email["html"]
    assert DEFAULT_BRAND_COLOR in email["html"]


def test_daily_digest_singular_subject(fixed_now):
    email = build_daily_digest(_project(), _updates(1, fixed_now), build_urls("tok123", "a@x.com"))

    assert email["subject"] == "1 new update on Acme Website"
    assert "more update" not in email["text"]


def test_weekly_digest(fixed_now):
    updates = _updates(7, fixed_now)
    updates[0].link = Link(update_id=1, url="https://acme.example.com")
    week_start = fixed_now - timedelta(days=7)

    email = build_weekly_digest(_project(), updates, build_urls("tok123", "a@x.com"), week_start, fixed_now)

    assert email["subject"] == "Your weekly summary for Acme Website (Mar 8 - Mar 15)"
    assert "7 updates | 1 day with activity | 1 link" in email["text"]
    assert "HIGHLIGHTS" in email["text"]
    assert "Update number 4" in email["text"]
    assert "Update number 5" not in email["text"]
    assert "...and 2 more updates" in email["text"]
    assert "Activity" in email["html"]


def test_weekly_activity_ends_on_send_day(fixed_now):
    posted_today = Update(project_id=1, content="Shipped", id=1, created_at=fixed_now - timedelta(minutes=5))
    posted_monday = Update(project_id=1, content="Kickoff", id=2, created_at=fixed_now - timedelta(days=4))

    activity = _daily_activity(_group_by_day([posted_today, posted_monday]), fixed_now)

    assert [day["label"] for day in activity] == ["Sat", "Sun", "Mon", "Tue", "Wed", "Thu", "Fri"]
    assert [day["count"] for day in activity] == [0, 0, 1, 0, 0, 0, 1]


def test_subscription_confirmed():
    email = build_subscription_confirmed(_project(), "weekly", build_urls("tok123", "a@x.com"))

    assert email["subject"] == "You're subscribed to Acme Website"
    assert "Frequency: Weekly summary" in email["text"]
    assert "Weekly summary" in email["html"]
    assert "Manage preferences" in email["html"]
