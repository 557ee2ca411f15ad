"""Shared fixtures: every test gets its own SQLite database and no SMTP."""
from datetime import datetime, timezone

import pytest

from statusping import database
from statusping.delivery import email_sender


@pytest.fixture(autouse=True)
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "statusping.db"
    monkeypatch.setattr(database, "DATABASE_PATH", path)
    database.init_db()
    return path


@pytest.fixture(autouse=True)
def no_smtp(monkeypatch):
    monkeypatch.setattr(email_sender, "SMTP_HOST", None)
    monkeypatch.setattr(email_sender, "SMTP_USERNAME", None)
    monkeypatch.setattr(email_sender, "SMTP_PASSWORD", None)


@pytest.fixture
def project():
    return database.create_project("Acme Website", description="Redesign for Acme")


@pytest.fixture
def fixed_now():
    # A Friday
    return datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
