"""HTTP tests for the admin, project owner and scheduler endpoints."""
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from statusping.database import create_project, upsert_subscription, utcnow
from statusping.jobs.queue import enqueue_job, get_job, get_job_stats, mark_job_failed, mark_job_processing
from statusping.models import SendResult
from statusping.web import app as web_app

ADMIN = {"X-Admin-Secret": "admin-secret"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(web_app, "SCHEDULER_ENABLED", False)
    monkeypatch.setattr(web_app, "ADMIN_SECRET", "admin-secret")
    monkeypatch.setattr(web_app, "CRON_SECRET", "cron-secret")
    with TestClient(web_app.app) as c:
        yield c


def _failed_job():
    job = enqueue_job("daily_digest", {"project_id": 1})
    for _ in range(3):
        mark_job_processing(job.id)
        mark_job_failed(job.id, "boom", now=utcnow())
    return job


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_admin_secret_required(client, monkeypatch):
    assert client.get("/api/admin/jobs/status").status_code == 401
    assert client.get("/api/admin/jobs/status", headers={"X-Admin-Secret": "wrong"}).status_code == 401

    monkeypatch.setattr(web_app, "ADMIN_SECRET", "")
    response = client.get("/api/admin/jobs/status", headers=ADMIN)
    assert response.status_code == 500
    assert "not configured" in response.json()["error"]


def test_jobs_status(client):
    enqueue_job("daily_digest", {"project_id": 1})
    _failed_job()

    response = client.get("/api/admin/jobs/status", headers=ADMIN)

    assert response.status_code == 200
    data = response.json()
    assert data["jobs"]["by_status"]["pending"] == 1
    assert data["jobs"]["by_status"]["failed"] == 1
    assert len(data["recent_failed"]) == 1
    assert data["scheduler"]["config"]["daily_digest_hour"] == 9
    assert set(data["scheduler"]["pending"]) == {"daily_digest", "weekly_digest", "cleanup"}


def test_list_jobs(client):
    enqueue_job("daily_digest", {"project_id": 1})
    _failed_job()

    response = client.get("/api/admin/jobs", params={"status": "failed"}, headers=ADMIN)
    assert response.status_code == 200
    assert [j["status"] for j in response.json()["jobs"]] == ["failed"]

    assert client.get("/api/admin/jobs", params={"status": "stuck"}, headers=ADMIN).status_code == 400


def test_retry_job(client):
    job = _failed_job()

    response = client.post("/api/admin/jobs/{}/retry".format(job.id), headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["job"]["status"] == "pending"
    # Attempts are kept, so the job gets one more try
    assert response.json()["attempts_left"] == 1
    assert get_job(job.id).status == "pending"
    # Pending jobs cannot be retried
    assert client.post("/api/admin/jobs/{}/retry".format(job.id), headers=ADMIN).status_code == 400
    assert client.post("/api/admin/jobs/9999/retry", headers=ADMIN).status_code == 404


def test_retry_processing_job(client):
    running = enqueue_job("daily_digest", {"project_id": 1})
    mark_job_processing(running.id)
    stuck = enqueue_job("daily_digest", {"project_id": 1}, scheduled_for=utcnow() - timedelta(hours=2))
    mark_job_processing(stuck.id)

    response = client.post("/api/admin/jobs/{}/retry".format(running.id), headers=ADMIN)
    assert response.status_code == 409
    assert "still processing" in response.json()["error"]
    assert get_job(running.id).status == "processing"

    response = client.post("/api/admin/jobs/{}/retry".format(stuck.id), headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["attempts_left"] == 2
    assert get_job(stuck.id).status == "pending"


def test_delete_job(client):
    job = enqueue_job("daily_digest", {"project_id": 1})

    assert client.delete("/api/admin/jobs/{}".format(job.id), headers=ADMIN).status_code == 200
    assert client.delete("/api/admin/jobs/{}".format(job.id), headers=ADMIN).status_code == 404


def test_cleanup(client):
    _failed_job()

    response = client.post("/api/admin/jobs/cleanup", headers=ADMIN)

    assert response.status_code == 200
    # Jobs are only just created, so nothing is old enough
    assert response.json()["deleted"] == 0
    assert client.post("/api/admin/jobs/cleanup", params={"days": 0}, headers=ADMIN).status_code == 400


def test_trigger_daily_and_weekly(client):
    project = create_project("Acme")
    upsert_subscription(project.id, "a@x.com", "daily")

    response = client.post("/api/admin/digest/trigger-daily", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["queued"] == 1

    response = client.post("/api/admin/digest/trigger-weekly", headers=ADMIN)
    assert response.json()["queued"] == 0
    assert get_job_stats()["by_type"] == {"daily_digest": 1}


def test_email_status(client):
    response = client.get("/api/admin/email/status", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["configured"] is False
    assert response.json()["mode"] == "development"


def test_send_test_email(client):
    transport = MagicMock(return_value=SendResult(success=True, message_id="<m1>"))
    with patch("statusping.delivery.dispatcher.send_email", transport):
        response = client.post("/api/admin/email/test", json={"email": "me@x.com", "kind": "weekly"}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["message_id"] == "<m1>"
    assert transport.call_args.args[1].startswith("Your weekly summary for Test Project")


def test_send_test_email_validation(client):
    assert client.post("/api/admin/email/test", json={"kind": "daily"}, headers=ADMIN).status_code == 400
    assert client.post(
        "/api/admin/email/test", json={"email": "me@x.com", "kind": "monthly"}, headers=ADMIN
    ).status_code == 400


def test_send_test_email_failure(client):
    transport = MagicMock(return_value=SendResult(success=False, error="SMTP error: refused"))
    with patch("statusping.delivery.dispatcher.send_email", transport):
        response = client.post("/api/admin/email/test", json={"email": "me@x.com"}, headers=ADMIN)

    assert response.status_code == 500
    assert response.json()["success"] is False


def test_create_update_queues_instant_digest(client):
    project = create_project("Acme")
    upsert_subscription(project.id, "a@x.com", "instant")

    response = client.post(
        "/api/projects/{}/updates".format(project.id),
        json={
            "content": "Homepage is live",
            "images": [{"url": "https://cdn.example.com/1.png"}],
            "link": {"url": "https://acme.example.com", "title": "Acme"},
        },
        headers=ADMIN,
    )

    assert response.status_code == 201
    update = response.json()["update"]
    assert update["content"] == "Homepage is live"
    assert update["link"]["title"] == "Acme"
    # The background task has run by the time TestClient returns
    stats = get_job_stats()
    assert stats["by_type"] == {"instant_digest": 1}


def test_create_update_validation(client):
    project = create_project("Acme")
    url = "/api/projects/{}/updates".format(project.id)

    too_many = [{"url": "https://cdn.example.com/{}.png".format(i)} for i in range(5)]
    assert client.post(url, json={"content": "x", "images": too_many}, headers=ADMIN).status_code == 422
    assert client.post(url, json={"content": "   "}, headers=ADMIN).status_code == 422
    assert client.post("/api/projects/999/updates", json={"content": "x"}, headers=ADMIN).status_code == 404


def test_subscribers(client):
    project = create_project("Acme")
    sub, _ = upsert_subscription(project.id, "a@x.com", "daily")
    upsert_subscription(project.id, "b@x.com", "weekly")
    url = "/api/projects/{}/subscribers".format(project.id)

    response = client.get(url, headers=ADMIN)
    assert response.json()["count"] == 2

    assert client.delete("{}/{}".format(url, sub.id), headers=ADMIN).status_code == 200
    assert client.delete("{}/{}".format(url, sub.id), headers=ADMIN).status_code == 404
    assert client.get(url, headers=ADMIN).json()["count"] == 1


def test_scheduler_tick_requires_cron_secret(client):
    assert client.post("/api/scheduler/tick").status_code == 401
    assert client.post("/api/scheduler/tick", headers=ADMIN).status_code == 401


def test_scheduler_tick_processes_jobs(client):
    project = create_project("Acme")
    upsert_subscription(project.id, "a@x.com", "instant")
    client.post("/api/projects/{}/updates".format(project.id), json={"content": "Hello"}, headers=ADMIN)

    transport = MagicMock(return_value=SendResult(success=True, message_id="<m1>"))
    with patch("statusping.delivery.dispatcher.send_email", transport):
        response = client.post("/api/scheduler/tick", headers={"X-Cron-Secret": "cron-secret"})

    assert response.status_code == 200
    assert response.json()["jobs"]["completed"] >= 1
    assert transport.call_args.args[0] == "a@x.com"
