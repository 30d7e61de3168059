import pytest
from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


@pytest.fixture
def api(reporting):
    app.state.reporting = reporting
    yield reporting
    app.state.reporting = None


def test_routes_require_initialized_reporting():
    app.state.reporting = None

    response = client.get("/reporting/jobs/status")

    assert response.status_code == 503


def test_generate_daily_enqueues_job(api):
    response = client.post(
        "/reporting/generate/daily",
        json={"report_date": "2024-03-08", "format": "excel", "recipient_ids": ["r1"]},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert body["job_id"].startswith("manual-daily-summary:")

    waiting = client.get("/reporting/jobs/waiting").json()["jobs"]
    assert [job["id"] for job in waiting] == [body["job_id"]]
    assert waiting[0]["job_type"] == "daily_summary"


def test_generate_weekly_rejects_negative_delay(api):
    response = client.post("/reporting/generate/weekly", json={"delay_ms": -1})

    assert response.status_code == 422


def test_job_status_and_control(api):
    job_id = client.post("/reporting/generate/weekly", json={"delay_ms": 60000}).json()["job_id"]

    status = client.get(f"/reporting/jobs/{job_id}")
    assert status.status_code == 200
    assert status.json()["status"] == "pending"
    assert status.json()["performance"] is None

    assert client.post(f"/reporting/jobs/{job_id}/pause").json() == {"job_id": job_id, "status": "paused"}
    assert client.get(f"/reporting/jobs/{job_id}").json()["status"] == "cancelled"
    assert client.post(f"/reporting/jobs/{job_id}/pause").status_code == 409

    assert client.post(f"/reporting/jobs/{job_id}/resume").status_code == 200

    assert client.delete(f"/reporting/jobs/{job_id}").json() == {"job_id": job_id, "removed": True}
    assert client.delete(f"/reporting/jobs/{job_id}").json() == {"job_id": job_id, "removed": False}
    assert client.get(f"/reporting/jobs/{job_id}").status_code == 404


def test_jobs_status_includes_queue_and_system(api):
    client.post("/reporting/generate/daily", json={})

    body = client.get("/reporting/jobs/status").json()

    assert body["queue"]["waiting"] == 1
    assert body["queue"]["total"] == 1
    assert body["system"]["period_hours"] == 24


def test_job_logs_return_execution_rows(api, executions):
    executions.add("job-1", "failed", error_message="boom")

    body = client.get("/reporting/jobs/job-1/logs").json()

    assert body["job_id"] == "job-1"
    assert body["logs"][0]["error_message"] == "boom"


def test_create_alert(api, alerts):
    response = client.post(
        "/reporting/alerts",
        json={
            "job_id": "repeat:daily-summary-report:abc",
            "alert_type": "consecutive_failures",
            "notification_channels": ["email"],
            "threshold_value": 3,
            "recipient_emails": ["ops@example.com"],
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["alert_type"] == "consecutive_failures"
    assert body["notification_channels"] == ["email"]
    assert len(alerts.alerts) == 1


def test_create_alert_requires_webhook_url(api):
    response = client.post(
        "/reporting/alerts",
        json={"job_id": "job-1", "alert_type": "failure", "notification_channels": ["webhook"]},
    )

    assert response.status_code == 400


def test_recipient_lifecycle(api, recipients):
    created = client.post("/reporting/recipients", json={"email": "Owner@Example.com", "name": " Owner "})

    assert created.status_code == 201
    recipient = created.json()["recipient"]
    assert recipient["email"] == "owner@example.com"
    assert recipient["name"] == "Owner"

    duplicate = client.post("/reporting/recipients", json={"email": "owner@example.com"})
    assert duplicate.status_code == 409

    token = recipients.tokens[recipient["id"]]
    verify_url = f"/reporting/recipients/{recipient['id']}/verify"
    assert client.post(verify_url, json={"token": "wrong"}).status_code == 400
    assert client.post(verify_url, json={"token": token}).json()["email_verified"] is True

    updated = client.put(f"/reporting/recipients/{recipient['id']}", json={"role": "owner"})
    assert updated.json()["recipient"]["role"] == "owner"

    listed = client.get("/reporting/recipients", params={"verified": "true"}).json()
    assert [r["id"] for r in listed["items"]] == [recipient["id"]]
    assert listed["pagination"]["total_count"] == 1

    assert client.delete(f"/reporting/recipients/{recipient['id']}").json()["deactivated"] is True
    assert client.get(f"/reporting/recipients/{recipient['id']}").json()["recipient"]["is_active"] is False
    assert client.get("/reporting/recipients/missing").status_code == 404


def test_recipient_rejects_unknown_channel(api):
    response = client.post(
        "/reporting/recipients", json={"email": "owner@example.com", "preferred_channels": ["sms"]}
    )

    assert response.status_code == 422


def test_subscription_lifecycle(api, subscriptions):
    request = {
        "recipient_email": "manager@example.com",
        "template_id": "daily-template",
        "delivery_format": "excel",
        "delivery_channels": ["email"],
    }

    created = client.post("/reporting/subscriptions", json=request)
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "pending_verification"
    assert body["next_delivery_at"] is not None
    subscription_id = body["subscription_id"]

    assert client.post("/reporting/subscriptions", json=request).status_code == 409
    missing = client.post("/reporting/subscriptions", json={**request, "template_id": "nope"})
    assert missing.status_code == 404

    paused = client.put(
        f"/reporting/subscriptions/{subscription_id}",
        json={"pause_until": "2030-01-01T00:00:00+00:00", "delivery_format": "csv"},
    )
    assert paused.status_code == 200
    assert paused.json()["subscription"]["delivery_format"] == "csv"
    assert subscriptions.subscriptions[subscription_id]["paused_until"] is not None

    resumed = client.put(f"/reporting/subscriptions/{subscription_id}", json={"pause_until": None})
    assert resumed.status_code == 200
    assert subscriptions.subscriptions[subscription_id]["paused_until"] is None

    listed = client.get("/reporting/subscriptions", params={"email": "manager@example.com"}).json()
    assert [s["id"] for s in listed["items"]] == [subscription_id]

    assert client.delete(f"/reporting/subscriptions/{subscription_id}").json()["unsubscribed"] is True
    assert subscriptions.subscriptions[subscription_id]["is_active"] is False
    assert client.put("/reporting/subscriptions/missing", json={}).status_code == 404


def test_unsubscribe_by_email(api, subscriptions):
    client.post(
        "/reporting/subscriptions",
        json={
            "recipient_email": "manager@example.com",
            "template_id": "daily-template",
            "delivery_format": "pdf",
            "delivery_channels": ["email"],
        },
    )

    response = client.delete("/reporting/subscriptions", params={"email": "Manager@example.com"})

    assert response.status_code == 200
    assert response.json()["email"] == "manager@example.com"
    assert all(not s["is_active"] for s in subscriptions.subscriptions.values())
    assert client.delete("/reporting/subscriptions", params={"email": "x@example.com"}).status_code == 404
