"""Tests for project, update and subscription storage."""
from datetime import timedelta

import pytest

from statusping.database import (
    IntegrityError,
    _q,
    _ts,
    advance_last_sent_at,
    count_subscriptions,
    create_project,
    create_update,
    get_connection,
    get_project_by_token,
    get_project_ids_with_subscribers,
    get_subscription,
    get_subscriptions_for_project,
    get_updates_since,
    get_updates_with_media,
    remove_subscription,
    remove_subscription_by_id,
    upsert_subscription,
)


def test_project_lookup_by_token(project):
    found = get_project_by_token(project.magic_link_token)

    assert found.id == project.id
    assert found.name == "Acme Website"
    assert found.notifications_enabled is True
    assert get_project_by_token("nope") is None


def test_duplicate_subscribe_overwrites_frequency(project):
    first, created = upsert_subscription(project.id, "d@x.com", "instant")
    assert created is True

    second, created = upsert_subscription(project.id, "d@x.com", "daily")
    assert created is False
    assert second.id == first.id

    subs = get_subscriptions_for_project(project.id)
    assert len(subs) == 1
    assert subs[0].frequency == "daily"
    assert count_subscriptions(project.id) == 1


def test_emails_are_normalized(project):
    upsert_subscription(project.id, "  Jane@Example.COM ", "weekly")

    sub = get_subscription(project.id, "jane@example.com")
    assert sub.email == "jane@example.com"
    assert sub.frequency == "weekly"


def test_upsert_rejects_unknown_frequency(project):
    with pytest.raises(ValueError):
        upsert_subscription(project.id, "a@x.com", "hourly")


def test_filter_subscriptions_by_frequency(project):
    upsert_subscription(project.id, "a@x.com", "instant")
    upsert_subscription(project.id, "b@x.com", "daily")
    upsert_subscription(project.id, "c@x.com", "daily")

    daily = get_subscriptions_for_project(project.id, frequency="daily")
    assert sorted(s.email for s in daily) == ["b@x.com", "c@x.com"]


def test_remove_subscription(project):
    sub, _ = upsert_subscription(project.id, "a@x.com", "instant")
    upsert_subscription(project.id, "b@x.com", "instant")

    assert remove_subscription(project.id, "A@x.com") is True
    assert remove_subscription(project.id, "a@x.com") is False
    assert remove_subscription_by_id(project.id, sub.id) is False
    assert count_subscriptions(project.id) == 1


def test_watermark_never_moves_backwards(project, fixed_now):
    sub, _ = upsert_subscription(project.id, "a@x.com", "daily")

    assert advance_last_sent_at([sub.id], fixed_now) == 1
    assert advance_last_sent_at([sub.id], fixed_now - timedelta(days=1)) == 0
    assert get_subscription(project.id, "a@x.com").last_sent_at == fixed_now

    later = fixed_now + timedelta(hours=1)
    advance_last_sent_at([sub.id], later)
    assert get_subscription(project.id, "a@x.com").last_sent_at == later


def test_advance_with_no_ids_is_a_noop():
    assert advance_last_sent_at([], None) == 0


def test_create_update_with_media(project):
    update = create_update(
        project.id,
        "Homepage is live",
        images=[{"url": "https://cdn.example.com/1.png", "filename": "1.png"}],
        link={"url": "https://acme.example.com", "title": "Acme"},
    )

    [loaded] = get_updates_with_media([update.id])
    assert loaded.content == "Homepage is live"
    assert [i.url for i in loaded.images] == ["https://cdn.example.com/1.png"]
    assert loaded.link.title == "Acme"


def test_create_update_allows_at_most_four_images(project):
    images = [{"url": "https://cdn.example.com/{}.png".format(i)} for i in range(5)]

    with pytest.raises(ValueError):
        create_update(project.id, "Too many pictures", images=images)


def test_only_first_link_is_attached(project):
    update = create_update(project.id, "Two links", link={"url": "https://first.example.com"})

    conn = get_connection()
    cursor = conn.cursor()
    cursor.execute(
        _q("INSERT INTO links (update_id, url, created_at) VALUES (?, ?, ?)"),
        (update.id, "https://second.example.com", _ts(update.created_at)),
    )
    conn.commit()
    conn.close()

    [loaded] = get_updates_with_media([update.id])
    assert loaded.link.url == "https://first.example.com"


def test_updates_since_is_strictly_after(project, fixed_now):
    create_update(project.id, "old", created_at=fixed_now - timedelta(days=2))
    create_update(project.id, "boundary", created_at=fixed_now)
    create_update(project.id, "new", created_at=fixed_now + timedelta(hours=1))

    assert [u.content for u in get_updates_since(project.id, fixed_now)] == ["new"]
    # No watermark means everything, newest first
    assert [u.content for u in get_updates_since(project.id, None)] == ["new", "boundary", "old"]


def test_project_ids_with_subscribers_skips_disabled_projects(project):
    quiet = create_project("Quiet Project", notifications_enabled=False)
    other = create_project("Other Project")

    upsert_subscription(project.id, "a@x.com", "daily")
    upsert_subscription(project.id, "b@x.com", "daily")
    upsert_subscription(quiet.id, "c@x.com", "daily")
    upsert_subscription(other.id, "d@x.com", "weekly")

    assert get_project_ids_with_subscribers("daily") == [project.id]
    assert get_project_ids_with_subscribers("weekly") == [other.id]


def test_subscribe_to_missing_project_fails():
    with pytest.raises(IntegrityError):
        upsert_subscription(9999, "a@x.com", "daily")
