import itertools
from dataclasses import replace
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

import pytest

from app.config import Settings
from app.features.reporting.container import build_reporting_container
from app.features.reporting.domain.models import (
    AlertType,
    DeliveryChannel,
    JobAlert,
    JobExecutionRecord,
    ReportGenerationRecord,
    ScheduledJob,
)
from app.features.reporting.repository.metrics_repository import BookingRecord


class FakeRedis:
    """In-memory stand-in for FastRedisClient covering the queue primitives."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.healthy = True

    async def ping(self) -> bool:
        return self.healthy

    async def acquire_lock(self, key: str, token: str, ttl_s: int) -> bool:
        if key in self.store:
            return False
        self.store[key] = token
        return True

    async def release_lock(self, key: str, token: str) -> bool:
        if self.store.get(key) == token:
            del self.store[key]
            return True
        return False

    async def hash_set(self, key: str, field: str, value: str) -> None:
        self.hashes.setdefault(key, {})[field] = value

    async def hash_set_if_absent(self, key: str, field: str, value: str) -> bool:
        bucket = self.hashes.setdefault(key, {})
        if field in bucket:
            return False
        bucket[field] = value
        return True

    async def hash_get(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    async def hash_get_all(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hash_delete(self, key: str, *fields: str) -> int:
        bucket = self.hashes.get(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        return sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    async def zset_add(self, key: str, member: str, score: float) -> None:
        self.zsets.setdefault(key, {})[member] = score

    async def zset_pop_min(self, key: str) -> tuple[str, float] | None:
        items = self._sorted(key)
        if not items:
            return None
        member, score = items[0]
        del self.zsets[key][member]
        return member, score

    async def zset_remove(self, key: str, *members: str) -> int:
        bucket = self.zsets.get(key, {})
        return sum(1 for member in members if bucket.pop(member, None) is not None)

    async def zset_range_by_score(
        self, key: str, min_score: float, max_score: float, limit: int | None = None
    ) -> list[str]:
        members = [m for m, s in self._sorted(key) if min_score <= s <= max_score]
        return members[:limit] if limit is not None else members

    async def zset_range(self, key: str, start: int = 0, end: int = -1, desc: bool = False) -> list[str]:
        members = [m for m, _ in self._sorted(key)]
        if desc:
            members.reverse()
        size = len(members)
        start = start + size if start < 0 else start
        end = end + size if end < 0 else end
        if end < start:
            return []
        return members[max(start, 0) : end + 1]

    async def zset_card(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    async def zset_score(self, key: str, member: str) -> float | None:
        return self.zsets.get(key, {}).get(member)


class FakeMetricsRepository:
    def __init__(self):
        self.bookings: list[BookingRecord] = []
        self.cache: dict[tuple[str, datetime, datetime], dict[str, Any]] = {}
        self.aggregations: dict[date, dict[str, Any]] = {}
        self.weekly_summaries: dict[date, dict[str, Any]] = {}
        self.event_rows: list[dict[str, Any]] = []
        self.waitlist = 0
        self.fail_on: set[str] = set()
        self.deleted_cache_before: list[datetime] = []

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    async def get_cached_metric(self, metric_key, period_start, period_end):
        self._check("get_cached_metric")
        return self.cache.get((metric_key, period_start, period_end))

    async def upsert_cached_metric(self, metric_key, period_start, period_end, value, expires_at):
        self.cache[(metric_key, period_start, period_end)] = value

    async def delete_expired_cache(self, cutoff):
        self._check("delete_expired_cache")
        self.deleted_cache_before.append(cutoff)
        return 2

    async def get_daily_aggregation(self, day):
        self._check("get_daily_aggregation")
        return self.aggregations.get(day)

    async def get_daily_aggregations(self, start, end):
        self._check("get_daily_aggregations")
        return [row for day, row in sorted(self.aggregations.items()) if start <= day <= end]

    async def upsert_daily_aggregation(self, day, metrics):
        self.aggregations[day] = {"aggregation_date": day, **metrics}

    async def get_weekly_summary(self, week_start):
        self._check("get_weekly_summary")
        return self.weekly_summaries.get(week_start)

    async def get_event_performance(self, start, end):
        self._check("get_event_performance")
        return [row for row in self.event_rows if start <= row["event_date"] <= end]

    async def get_bookings(self, start, end, status=None):
        self._check("get_bookings")
        return [
            b
            for b in self.bookings
            if start <= b.booking_date <= end and (status is None or b.status == status)
        ]

    async def get_waitlist_count(self, start, end):
        self._check("get_waitlist_count")
        return self.waitlist

    async def count_new_customers(self, start, end):
        return 0


class FakeHistoryRepository:
    def __init__(self):
        self.records: list[ReportGenerationRecord] = []
        self.templates = {"Daily Summary Report": "tpl-daily", "Weekly Summary Report": "tpl-weekly"}
        self.deleted_before: list[datetime] = []

    async def insert(self, record):
        record = replace(record, id=f"report-{len(self.records) + 1}")
        self.records.append(record)
        return record.id

    async def find_system_template_id(self, name):
        return self.templates.get(name)

    async def delete_successful_before(self, cutoff):
        self.deleted_before.append(cutoff)
        return 3


class FakeExecutionRepository:
    def __init__(self):
        self.rows: list[dict[str, Any]] = []
        self._seq = itertools.count()

    def _ordered(self, job_id=None) -> list[dict[str, Any]]:
        rows = [r for r in self.rows if job_id is None or r["job_id"] == job_id]
        return sorted(rows, key=lambda r: (r["started_at"], r["_seq"]), reverse=True)

    def add(self, job_id: str, status: str, **fields) -> dict[str, Any]:
        seq = next(self._seq)
        row = {
            "id": str(seq),
            "_seq": seq,
            "job_id": job_id,
            "execution_id": fields.pop("execution_id", f"{job_id}:{seq}"),
            "status": status,
            "started_at": fields.pop("started_at", datetime.now(UTC)),
            "completed_at": fields.pop("completed_at", None),
            "execution_time_ms": fields.pop("execution_time_ms", None),
            "attempt_number": fields.pop("attempt_number", 1),
            "error_message": fields.pop("error_message", None),
            **fields,
        }
        self.rows.append(row)
        return row

    async def insert(self, record: JobExecutionRecord):
        row = self.add(
            record.job_id,
            record.status.value,
            execution_id=record.execution_id,
            started_at=record.started_at or datetime.now(UTC),
            completed_at=record.completed_at,
            execution_time_ms=record.execution_time_ms,
            attempt_number=record.attempt_number,
            error_message=record.error_message,
            result=record.result,
            records_processed=record.records_processed,
        )
        return row["id"]

    async def update(self, execution_id, updates):
        matched = False
        for row in self.rows:
            if row["execution_id"] == execution_id:
                row.update(
                    {k: v.value if isinstance(v, Enum) else v for k, v in updates.items()}
                )
                matched = True
        return matched

    async def recent_for_job(self, job_id, limit=10):
        return self._ordered(job_id)[:limit]

    async def recent_completed_times(self, job_id, limit=10, exclude_execution_id=None):
        return [
            r["execution_time_ms"]
            for r in self._ordered(job_id)
            if r["status"] == "completed"
            and r["execution_time_ms"] is not None
            and r["execution_id"] != exclude_execution_id
        ][:limit]

    async def for_job_since(self, job_id, since):
        return [r for r in self._ordered(job_id) if r["started_at"] >= since]

    async def all_since(self, since):
        return [r for r in self._ordered() if r["started_at"] >= since]

    async def delete_completed_before(self, cutoff):
        doomed = [
            r
            for r in self.rows
            if r["status"] == "completed" and r["completed_at"] and r["completed_at"] < cutoff
        ]
        self.rows = [r for r in self.rows if r not in doomed]
        return len(doomed)

    async def logs(self, job_id, limit=50, offset=0):
        return self._ordered(job_id)[offset : offset + limit]


class FakeAlertRepository:
    def __init__(self):
        self.alerts: list[JobAlert] = []
        self.triggered: list[tuple[str, datetime]] = []

    async def create(
        self,
        job_id,
        alert_type,
        notification_channels,
        threshold_value=None,
        recipient_emails=None,
        webhook_url=None,
        enabled=True,
    ):
        alert = JobAlert(
            id=f"alert-{len(self.alerts) + 1}",
            job_id=job_id,
            alert_type=alert_type,
            notification_channels=list(notification_channels),
            threshold_value=threshold_value,
            recipient_emails=list(recipient_emails or []),
            webhook_url=webhook_url,
            enabled=enabled,
        )
        self.alerts.append(alert)
        return alert

    def add(self, job_id: str, alert_type: AlertType, **fields) -> JobAlert:
        alert = JobAlert(
            id=f"alert-{len(self.alerts) + 1}",
            job_id=job_id,
            alert_type=alert_type,
            notification_channels=fields.pop("notification_channels", [DeliveryChannel.EMAIL]),
            recipient_emails=fields.pop("recipient_emails", ["ops@example.com"]),
            **fields,
        )
        self.alerts.append(alert)
        return alert

    async def enabled_for_job(self, job_id):
        return [a for a in self.alerts if a.job_id == job_id and a.enabled]

    async def mark_triggered(self, alert_id, triggered_at):
        self.triggered.append((alert_id, triggered_at))
        for alert in self.alerts:
            if alert.id == alert_id:
                alert.last_triggered_at = triggered_at


class FakeScheduledJobRepository:
    def __init__(self):
        self.jobs: dict[str, ScheduledJob] = {}
        self.enabled: dict[str, bool] = {}

    async def upsert(self, job):
        self.jobs[job.id] = job
        self.enabled[job.id] = True

    async def set_enabled(self, job_id, enabled):
        self.enabled[job_id] = enabled

    async def get(self, job_id):
        job = self.jobs.get(job_id)
        if job is None:
            return None
        return {"id": job.id, "name": job.name, "description": job.description}

    async def delete(self, job_id):
        return 1 if self.jobs.pop(job_id, None) else 0


def _plain(value):
    if isinstance(value, list):
        return [item.value if isinstance(item, Enum) else item for item in value]
    return value.value if isinstance(value, Enum) else value


class FakeRecipientRepository:
    def __init__(self):
        self.recipients: dict[str, dict[str, Any]] = {}
        self.tokens: dict[str, str] = {}

    async def get_deliverable(self, recipient_ids):
        return [
            self.recipients[r]
            for r in recipient_ids
            if r in self.recipients
            and self.recipients[r].get("is_active", True)
            and self.recipients[r].get("email_verified", True)
        ]

    async def create(self, fields, verification_token):
        recipient_id = f"recipient-{len(self.recipients) + 1}"
        now = datetime.now(UTC)
        self.recipients[recipient_id] = {
            **{k: _plain(v) for k, v in fields.items()},
            "id": recipient_id,
            "is_active": True,
            "email_verified": False,
            "bounced_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        self.tokens[recipient_id] = verification_token
        return dict(self.recipients[recipient_id])

    async def get(self, recipient_id):
        row = self.recipients.get(recipient_id)
        return dict(row) if row else None

    async def get_by_email(self, email):
        for row in self.recipients.values():
            if row["email"] == email:
                return dict(row)
        return None

    async def list_page(self, filters, limit, offset):
        rows = [
            dict(r)
            for r in self.recipients.values()
            if all(value is None or r.get(column) == value for column, value in filters.items())
        ]
        return rows[offset : offset + limit], len(rows)

    async def update(self, recipient_id, updates):
        if recipient_id not in self.recipients:
            return False
        self.recipients[recipient_id].update({k: _plain(v) for k, v in updates.items()})
        return True

    async def verify_email(self, recipient_id, verification_token):
        if recipient_id not in self.tokens or self.tokens[recipient_id] != verification_token:
            return False
        del self.tokens[recipient_id]
        self.recipients[recipient_id]["email_verified"] = True
        return True

    async def increment_bounces(self, recipient_id):
        if recipient_id not in self.recipients:
            return None
        self.recipients[recipient_id]["bounced_count"] += 1
        return self.recipients[recipient_id]["bounced_count"]

    async def delete_inactive_before(self, cutoff):
        stale = [
            key
            for key, r in self.recipients.items()
            if not r["is_active"] and r["updated_at"] < cutoff
        ]
        for key in stale:
            del self.recipients[key]
        return len(stale)

    async def statistics(self):
        rows = list(self.recipients.values())
        return {
            "total": len(rows),
            "active": sum(1 for r in rows if r.get("is_active")),
            "verified": sum(1 for r in rows if r.get("email_verified")),
            "by_role": {},
        }


class FakeSubscriptionRepository:
    def __init__(self):
        self.templates: dict[str, dict[str, Any]] = {
            "daily-template": {
                "id": "daily-template",
                "name": "Daily Summary",
                "report_type": "daily_summary",
                "is_active": True,
                "schedule": "0 22 * * *",
            },
            "retired-template": {
                "id": "retired-template",
                "name": "Old Report",
                "report_type": "daily_summary",
                "is_active": False,
                "schedule": None,
            },
        }
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.delivered: list[tuple[str, datetime | None]] = []

    async def get_template(self, template_id):
        return self.templates.get(template_id)

    async def get(self, subscription_id):
        row = self.subscriptions.get(subscription_id)
        return dict(row) if row else None

    async def find(self, recipient_id, template_id):
        for row in self.subscriptions.values():
            if row["recipient_id"] == recipient_id and row["template_id"] == template_id:
                return {"id": row["id"], "is_active": row["is_active"]}
        return None

    async def create(self, fields):
        subscription_id = f"subscription-{len(self.subscriptions) + 1}"
        self.subscriptions[subscription_id] = {
            **{k: _plain(v) for k, v in fields.items()},
            "id": subscription_id,
            "is_active": True,
            "paused_until": None,
        }
        return subscription_id

    async def update(self, subscription_id, updates):
        if subscription_id not in self.subscriptions:
            return False
        self.subscriptions[subscription_id].update({k: _plain(v) for k, v in updates.items()})
        return True

    async def deactivate_for_recipient(self, recipient_id, template_id=None):
        matched = [
            row
            for row in self.subscriptions.values()
            if row["recipient_id"] == recipient_id and template_id in (None, row["template_id"])
        ]
        for row in matched:
            row["is_active"] = False
        return len(matched)

    async def list_page(self, filters, limit, offset):
        rows = [
            dict(r)
            for r in self.subscriptions.values()
            if all(value is None or r.get(column) == value for column, value in filters.items())
        ]
        return rows[offset : offset + limit], len(rows)

    async def due_for_delivery(self, now):
        return [
            dict(row)
            for row in self.subscriptions.values()
            if row["is_active"]
            and (row["paused_until"] is None or row["paused_until"] < now)
            and row.get("next_delivery_at") is not None
            and row["next_delivery_at"] < now
        ]

    async def mark_delivered(self, subscription_id, next_delivery_at):
        self.delivered.append((subscription_id, next_delivery_at))
        self.subscriptions[subscription_id]["next_delivery_at"] = next_delivery_at
        return True

    async def statistics(self):
        rows = list(self.subscriptions.values())
        return {"total": len(rows), "active": sum(1 for r in rows if r["is_active"])}


class FakeDeliveryRepository:
    def __init__(self):
        self.rows: dict[str, dict[str, Any]] = {}

    async def create(self, generation_id, recipient_id, channel, address):
        delivery_id = f"delivery-{len(self.rows) + 1}"
        self.rows[delivery_id] = {
            "generation_id": generation_id,
            "recipient_id": recipient_id,
            "channel": channel,
            "address": address,
            "status": "pending",
        }
        return delivery_id

    async def mark_delivered(self, delivery_id, message_id):
        self.rows[delivery_id].update(status="delivered", message_id=message_id)

    async def mark_failed(self, delivery_id, reason):
        self.rows[delivery_id].update(status="failed", reason=reason)


class FakeDistributor:
    """Records outbound alert and report hand-offs instead of sending them."""

    def __init__(self):
        self.emails: list[tuple[list[str], dict[str, Any]]] = []
        self.webhooks: list[tuple[str, dict[str, Any]]] = []
        self.reports: list[tuple[str, str, list[str]]] = []
        self.verifications: list[tuple[str, str]] = []
        self.fail_webhooks = False

    async def send_job_alert(self, recipient_emails, alert_data):
        self.emails.append((list(recipient_emails), alert_data))
        return len(recipient_emails)

    async def send_webhook_alert(self, url, alert_data):
        if self.fail_webhooks:
            raise RuntimeError("webhook down")
        self.webhooks.append((url, alert_data))
        return 200

    async def send_verification_email(self, email, verify_url):
        self.verifications.append((email, verify_url))
        return True

    async def schedule_daily_report_distribution(self, report_id, recipient_ids, report_data):
        self.reports.append(("daily", report_id, list(recipient_ids)))
        return len(recipient_ids)

    async def schedule_weekly_report_distribution(self, report_id, recipient_ids, report_data):
        self.reports.append(("weekly", report_id, list(recipient_ids)))
        return len(recipient_ids)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def metrics():
    return FakeMetricsRepository()


@pytest.fixture
def history():
    return FakeHistoryRepository()


@pytest.fixture
def executions():
    return FakeExecutionRepository()


@pytest.fixture
def alerts():
    return FakeAlertRepository()


@pytest.fixture
def scheduled_jobs():
    return FakeScheduledJobRepository()


@pytest.fixture
def recipients():
    return FakeRecipientRepository()


@pytest.fixture
def subscriptions():
    return FakeSubscriptionRepository()


@pytest.fixture
def deliveries():
    return FakeDeliveryRepository()


@pytest.fixture
def fake_distributor():
    return FakeDistributor()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        RESEND_API_KEY="re_test",
        APP_PUBLIC_URL="https://reports.example.com",
        QUEUE_BACKOFF_DELAY_MS=1000,
        QUEUE_POLL_INTERVAL_S=0.01,
    )


@pytest.fixture
def reporting(
    fake_redis,
    test_settings,
    metrics,
    history,
    recipients,
    subscriptions,
    deliveries,
    executions,
    alerts,
    scheduled_jobs,
    fake_distributor,
):
    """Fully wired reporting container over in-memory fakes."""
    return build_reporting_container(
        fake_redis,
        test_settings,
        metrics=metrics,
        history=history,
        recipients=recipients,
        subscriptions=subscriptions,
        deliveries=deliveries,
        executions=executions,
        alerts=alerts,
        scheduled_jobs=scheduled_jobs,
        distributor=fake_distributor,
        run_workers=False,
    )
