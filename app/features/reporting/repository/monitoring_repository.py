"""
Repositories for job monitoring tables.

job_execution_history rows are owned by the worker attempt that created
them. job_alerts and scheduled_jobs are operator-managed; the scheduler
keeps scheduled_jobs in sync so alerts can resolve a job's name.
"""

from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, execute_returning, fetch_all, fetch_one
from app.features.reporting.domain.models import (
    AlertType,
    DeliveryChannel,
    JobAlert,
    JobExecutionRecord,
    ScheduledJob,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_UPDATABLE_EXECUTION_COLUMNS = {
    "status",
    "completed_at",
    "execution_time_ms",
    "error_message",
    "error_stack",
    "result",
    "metadata",
    "cpu_usage_percent",
    "memory_usage_mb",
    "records_processed",
}

_JSON_COLUMNS = {"result", "metadata"}


class ExecutionRepository:
    """Raw SQL helpers for job_execution_history."""

    async def insert(self, record: JobExecutionRecord) -> str | None:
        row = await execute_returning(
            """
            INSERT INTO job_execution_history (
                job_id, execution_id, status, started_at, completed_at,
                execution_time_ms, attempt_number, error_message, error_stack,
                result, metadata, cpu_usage_percent, memory_usage_mb, records_processed
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                record.job_id,
                record.execution_id,
                record.status.value,
                record.started_at,
                record.completed_at,
                record.execution_time_ms,
                record.attempt_number,
                record.error_message,
                record.error_stack,
                Jsonb(record.result),
                Jsonb(record.metadata),
                record.cpu_usage_percent,
                record.memory_usage_mb,
                record.records_processed,
            ),
        )
        return str(row["id"]) if row else None

    async def update(self, execution_id: str, updates: dict[str, Any]) -> bool:
        fields = {k: v for k, v in updates.items() if k in _UPDATABLE_EXECUTION_COLUMNS}
        if not fields:
            return False

        assignments = ", ".join(f"{column} = %s" for column in fields)
        values = [
            Jsonb(value) if column in _JSON_COLUMNS else getattr(value, "value", value)
            for column, value in fields.items()
        ]
        count = await execute_query(
            f"UPDATE job_execution_history SET {assignments} WHERE execution_id = %s",
            (*values, execution_id),
        )
        return count > 0

    async def recent_for_job(self, job_id: str, limit: int = 10) -> list[dict[str, Any]]:
        """Newest first."""
        return await fetch_all(
            """
            SELECT execution_id, status, execution_time_ms, started_at, completed_at
            FROM job_execution_history
            WHERE job_id = %s
            ORDER BY started_at DESC
            LIMIT %s
            """,
            (job_id, limit),
        )

    async def recent_completed_times(
        self, job_id: str, limit: int = 10, exclude_execution_id: str | None = None
    ) -> list[int]:
        rows = await fetch_all(
            """
            SELECT execution_time_ms
            FROM job_execution_history
            WHERE job_id = %s
              AND status = 'completed'
              AND execution_time_ms IS NOT NULL
              AND execution_id IS DISTINCT FROM %s
            ORDER BY started_at DESC
            LIMIT %s
            """,
            (job_id, exclude_execution_id, limit),
        )
        return [int(row["execution_time_ms"]) for row in rows]

    async def for_job_since(self, job_id: str, since: datetime) -> list[dict[str, Any]]:
        return await fetch_all(
            """
            SELECT status, execution_time_ms, attempt_number, error_message, started_at
            FROM job_execution_history
            WHERE job_id = %s AND started_at >= %s
            ORDER BY started_at DESC
            """,
            (job_id, since),
        )

    async def all_since(self, since: datetime) -> list[dict[str, Any]]:
        return await fetch_all(
            """
            SELECT job_id, status, execution_time_ms
            FROM job_execution_history
            WHERE started_at >= %s
            """,
            (since,),
        )

    async def delete_completed_before(self, cutoff: datetime) -> int:
        return await execute_query(
            """
            DELETE FROM job_execution_history
            WHERE status = 'completed' AND completed_at < %s
            """,
            (cutoff,),
        )

    async def logs(self, job_id: str, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        return await fetch_all(
            """
            SELECT *
            FROM job_execution_history
            WHERE job_id = %s
            ORDER BY started_at DESC
            LIMIT %s OFFSET %s
            """,
            (job_id, limit, offset),
        )


def _alert_from_row(row: dict[str, Any]) -> JobAlert:
    return JobAlert(
        id=str(row["id"]),
        job_id=str(row["job_id"]),
        alert_type=AlertType(row["alert_type"]),
        notification_channels=[DeliveryChannel(c) for c in (row.get("notification_channels") or [])],
        threshold_value=(
            float(row["threshold_value"]) if row.get("threshold_value") is not None else None
        ),
        recipient_emails=list(row.get("recipient_emails") or []),
        webhook_url=row.get("webhook_url"),
        enabled=bool(row.get("enabled", True)),
        last_triggered_at=row.get("last_triggered_at"),
    )


class AlertRepository:
    """Raw SQL helpers for job_alerts."""

    async def create(
        self,
        job_id: str,
        alert_type: AlertType,
        notification_channels: list[DeliveryChannel],
        threshold_value: float | None = None,
        recipient_emails: list[str] | None = None,
        webhook_url: str | None = None,
        enabled: bool = True,
    ) -> JobAlert | None:
        row = await execute_returning(
            """
            INSERT INTO job_alerts (
                job_id, alert_type, threshold_value, notification_channels,
                recipient_emails, webhook_url, enabled
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                job_id,
                alert_type.value,
                threshold_value,
                [channel.value for channel in notification_channels],
                recipient_emails or [],
                webhook_url,
                enabled,
            ),
        )
        return _alert_from_row(row) if row else None

    async def enabled_for_job(self, job_id: str) -> list[JobAlert]:
        rows = await fetch_all(
            "SELECT * FROM job_alerts WHERE job_id = %s AND enabled = true",
            (job_id,),
        )
        return [_alert_from_row(row) for row in rows]

    async def mark_triggered(self, alert_id: str, triggered_at: datetime) -> None:
        await execute_query(
            "UPDATE job_alerts SET last_triggered_at = %s WHERE id = %s",
            (triggered_at, alert_id),
        )


class ScheduledJobRepository:
    """scheduled_jobs mirror of the queue's recurring definitions."""

    async def upsert(self, job: ScheduledJob) -> None:
        await execute_query(
            """
            INSERT INTO scheduled_jobs (
                id, name, description, job_type, cron_expression, timezone,
                priority, max_retries, timeout_seconds, enabled, metadata, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, true, %s, NOW())
            ON CONFLICT (id) DO UPDATE
            SET description = EXCLUDED.description,
                cron_expression = EXCLUDED.cron_expression,
                timezone = EXCLUDED.timezone,
                priority = EXCLUDED.priority,
                max_retries = EXCLUDED.max_retries,
                timeout_seconds = EXCLUDED.timeout_seconds,
                enabled = true,
                metadata = EXCLUDED.metadata,
                updated_at = NOW()
            """,
            (
                job.id,
                job.name,
                job.description,
                job.job_type.value,
                job.cron_expression,
                job.timezone,
                job.priority.value,
                job.max_attempts,
                job.timeout_ms // 1000 if job.timeout_ms else None,
                Jsonb({"payload": job.payload}),
            ),
        )

    async def set_enabled(self, job_id: str, enabled: bool) -> None:
        await execute_query(
            "UPDATE scheduled_jobs SET enabled = %s, updated_at = NOW() WHERE id = %s",
            (enabled, job_id),
        )

    async def get(self, job_id: str) -> dict[str, Any] | None:
        return await fetch_one(
            "SELECT id, name, description FROM scheduled_jobs WHERE id = %s",
            (job_id,),
        )

    async def delete(self, job_id: str) -> int:
        return await execute_query("DELETE FROM scheduled_jobs WHERE id = %s", (job_id,))
