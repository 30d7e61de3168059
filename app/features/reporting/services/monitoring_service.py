"""
Job monitoring.

Records every execution attempt, computes rolling performance statistics
and evaluates alert rules. Nothing in here may break the job pipeline:
persistence and notification errors are logged and swallowed.
"""

import resource
import time
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from app.features.reporting.domain.errors import JobValidationError
from app.features.reporting.domain.models import (
    AlertType,
    DeliveryChannel,
    JobAlert,
    JobExecutionRecord,
    JobStatus,
)
from app.features.reporting.repository.monitoring_repository import (
    AlertRepository,
    ExecutionRepository,
    ScheduledJobRepository,
)
from app.features.reporting.services.distribution_service import EmailDistributor
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CONSECUTIVE_FAILURE_WINDOW = 10
DEFAULT_CONSECUTIVE_THRESHOLD = 3
SLOW_EXECUTION_BASELINE = 10
DEFAULT_SLOW_MULTIPLIER = 2.0


@dataclass(slots=True)
class ResourceUsage:
    cpu_usage_percent: float
    memory_usage_mb: int


class ResourceSampler:
    """CPU share and peak RSS for one attempt, measured in-process."""

    def __init__(self):
        self._wall_start = time.perf_counter()
        self._cpu_start = time.process_time()

    def finish(self) -> ResourceUsage:
        wall = time.perf_counter() - self._wall_start
        cpu = time.process_time() - self._cpu_start
        cpu_percent = round(min(100.0, cpu / wall * 100), 2) if wall > 0 else 0.0
        # ru_maxrss is KiB on Linux
        memory_mb = int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024)
        return ResourceUsage(cpu_usage_percent=cpu_percent, memory_usage_mb=memory_mb)


class JobMonitor:
    def __init__(
        self,
        executions: ExecutionRepository,
        alerts: AlertRepository,
        scheduled_jobs: ScheduledJobRepository,
        distributor: EmailDistributor,
    ):
        self.executions = executions
        self.alerts = alerts
        self.scheduled_jobs = scheduled_jobs
        self.distributor = distributor

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_job_execution(self, record: JobExecutionRecord) -> str | None:
        """Insert an execution row. Returns its id, or None if it could not be stored."""
        try:
            record_id = await self.executions.insert(record)
        except Exception as e:
            logger.error(
                "Failed to record job execution",
                job_id=record.job_id,
                execution_id=record.execution_id,
                error=str(e),
            )
            return None

        if record.status is JobStatus.FAILED:
            await self._evaluate_alerts(record)

        return record_id

    async def update_job_execution(self, execution_id: str, updates: dict[str, Any]) -> bool:
        try:
            return await self.executions.update(execution_id, updates)
        except Exception as e:
            logger.error("Failed to update job execution", execution_id=execution_id, error=str(e))
            return False

    async def complete_execution(
        self,
        record: JobExecutionRecord,
        result: dict[str, Any],
        execution_time_ms: int,
        usage: ResourceUsage | None = None,
    ) -> None:
        record.status = JobStatus.COMPLETED
        record.completed_at = datetime.now(UTC)
        record.execution_time_ms = execution_time_ms
        record.result = result
        record.records_processed = _records_processed(result)
        await self._finish(record, usage)
        # Completed runs can still be slow
        await self._evaluate_alerts(record)

    async def fail_execution(
        self,
        record: JobExecutionRecord,
        error_message: str,
        execution_time_ms: int,
        error_stack: str | None = None,
        usage: ResourceUsage | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        record.status = JobStatus.FAILED
        record.completed_at = datetime.now(UTC)
        record.execution_time_ms = execution_time_ms
        record.error_message = error_message
        record.error_stack = error_stack
        if metadata:
            record.metadata = {**record.metadata, **metadata}
        await self._finish(record, usage)
        await self._evaluate_alerts(record)

    async def _finish(self, record: JobExecutionRecord, usage: ResourceUsage | None) -> None:
        if usage is not None:
            record.cpu_usage_percent = usage.cpu_usage_percent
            record.memory_usage_mb = usage.memory_usage_mb

        updates = {
            "status": record.status,
            "completed_at": record.completed_at,
            "execution_time_ms": record.execution_time_ms,
            "error_message": record.error_message,
            "error_stack": record.error_stack,
            "result": record.result,
            "metadata": record.metadata,
            "cpu_usage_percent": record.cpu_usage_percent,
            "memory_usage_mb": record.memory_usage_mb,
            "records_processed": record.records_processed,
        }
        updated = await self.update_job_execution(record.execution_id, updates)
        if not updated:
            # The running row was never stored; keep the outcome anyway
            await self._insert_outcome(record)

    async def _insert_outcome(self, record: JobExecutionRecord) -> str | None:
        try:
            return await self.executions.insert(record)
        except Exception as e:
            logger.error("Failed to record job execution", execution_id=record.execution_id, error=str(e))
            return None

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_job_performance_metrics(
        self, job_id: str, window_days: int = 7
    ) -> dict[str, Any] | None:
        since = datetime.now(UTC) - timedelta(days=window_days)
        try:
            rows = await self.executions.for_job_since(job_id, since)
        except Exception as e:
            logger.error("Failed to load job performance metrics", job_id=job_id, error=str(e))
            return None

        if not rows:
            return None

        total = len(rows)
        completed = sum(1 for row in rows if row["status"] == JobStatus.COMPLETED.value)
        failed = sum(1 for row in rows if row["status"] == JobStatus.FAILED.value)
        times = [row["execution_time_ms"] for row in rows if row.get("execution_time_ms") is not None]
        attempts = [row.get("attempt_number") or 1 for row in rows]
        errors = Counter(row["error_message"] for row in rows if row.get("error_message"))
        last_execution = max(
            (row["started_at"] for row in rows if row.get("started_at")), default=None
        )

        return {
            "job_id": job_id,
            "window_days": window_days,
            "total_executions": total,
            "average_execution_time_ms": round(sum(times) / len(times)) if times else 0,
            "success_rate": round(completed / total * 100),
            "failure_rate": round(failed / total * 100),
            "average_retries": round(sum(attempts) / len(attempts), 1),
            "last_execution": last_execution,
            "common_errors": [
                {"error": error, "count": count} for error, count in errors.most_common(5)
            ],
        }

    async def get_system_performance_overview(self) -> dict[str, Any]:
        since = datetime.now(UTC) - timedelta(hours=24)
        try:
            rows = await self.executions.all_since(since)
        except Exception as e:
            logger.error("Failed to load system performance overview", error=str(e))
            rows = []

        by_status = Counter(row["status"] for row in rows)
        times = [row["execution_time_ms"] for row in rows if row.get("execution_time_ms") is not None]
        running = by_status.get(JobStatus.RUNNING.value, 0)
        failed = by_status.get(JobStatus.FAILED.value, 0)
        failing_jobs = Counter(
            row["job_id"] for row in rows if row["status"] == JobStatus.FAILED.value
        )

        return {
            "period_hours": 24,
            "total_executions": len(rows),
            "executions_by_status": {status.value: by_status.get(status.value, 0) for status in JobStatus},
            "average_execution_time_ms": round(sum(times) / len(times)) if times else 0,
            "system_load": min(100, running * 10 + failed * 5),
            "top_failing_jobs": [
                {"job_id": job_id, "failure_count": count}
                for job_id, count in failing_jobs.most_common(5)
            ],
        }

    async def get_job_execution_logs(
        self, job_id: str, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        try:
            return await self.executions.logs(job_id, limit, offset)
        except Exception as e:
            logger.error("Failed to load job execution logs", job_id=job_id, error=str(e))
            return []

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def create_job_alert(
        self,
        job_id: str,
        alert_type: AlertType,
        notification_channels: list[DeliveryChannel],
        threshold_value: float | None = None,
        recipient_emails: list[str] | None = None,
        webhook_url: str | None = None,
        enabled: bool = True,
    ) -> JobAlert | None:
        if not notification_channels:
            raise JobValidationError("At least one notification channel is required")
        if DeliveryChannel.WEBHOOK in notification_channels and not webhook_url:
            raise JobValidationError("webhook_url is required for the webhook channel")
        if DeliveryChannel.EMAIL in notification_channels and not recipient_emails:
            raise JobValidationError("recipient_emails are required for the email channel")

        try:
            alert = await self.alerts.create(
                job_id,
                alert_type,
                notification_channels,
                threshold_value=threshold_value,
                recipient_emails=recipient_emails,
                webhook_url=webhook_url,
                enabled=enabled,
            )
        except Exception as e:
            logger.error("Failed to create job alert", job_id=job_id, error=str(e))
            return None

        logger.info("Job alert created", job_id=job_id, alert_type=alert_type.value)
        return alert

    async def _evaluate_alerts(self, record: JobExecutionRecord) -> None:
        try:
            alerts = await self.alerts.enabled_for_job(record.job_id)
        except Exception as e:
            logger.error("Failed to load job alerts", job_id=record.job_id, error=str(e))
            return

        for alert in alerts:
            if not alert.enabled:
                continue
            try:
                if await self._should_trigger(alert, record):
                    await self._trigger_alert(alert, record)
            except Exception as e:
                logger.error(
                    "Alert evaluation failed",
                    alert_id=alert.id,
                    job_id=record.job_id,
                    error=str(e),
                )

    async def _should_trigger(self, alert: JobAlert, record: JobExecutionRecord) -> bool:
        failed = record.status is JobStatus.FAILED

        if alert.alert_type is AlertType.FAILURE:
            return failed

        if alert.alert_type is AlertType.CONSECUTIVE_FAILURES:
            if not failed:
                return False
            threshold = alert.threshold_value or DEFAULT_CONSECUTIVE_THRESHOLD
            recent = await self.executions.recent_for_job(record.job_id, CONSECUTIVE_FAILURE_WINDOW)
            run_length = 0
            for row in recent:
                if row["status"] != JobStatus.FAILED.value:
                    break
                run_length += 1
            return run_length >= threshold

        if alert.alert_type is AlertType.SLOW_EXECUTION:
            if record.execution_time_ms is None:
                return False
            baseline = await self.executions.recent_completed_times(
                record.job_id, SLOW_EXECUTION_BASELINE, exclude_execution_id=record.execution_id
            )
            if not baseline:
                return False
            multiplier = alert.threshold_value or DEFAULT_SLOW_MULTIPLIER
            average = sum(baseline) / len(baseline)
            return record.execution_time_ms > average * multiplier

        if alert.alert_type is AlertType.TIMEOUT:
            return failed and "timeout" in (record.error_message or "").lower()

        return False

    async def _trigger_alert(self, alert: JobAlert, record: JobExecutionRecord) -> None:
        job = None
        try:
            job = await self.scheduled_jobs.get(record.job_id)
        except Exception as e:
            logger.warning("Could not load job for alert", job_id=record.job_id, error=str(e))

        triggered_at = datetime.now(UTC)
        alert_data = {
            "jobName": job["name"] if job else record.job_id,
            "jobDescription": job.get("description") if job else None,
            "alertType": alert.alert_type.value,
            "executionData": {
                "executionId": record.execution_id,
                "status": record.status.value,
                "errorMessage": record.error_message,
                "executionTimeMs": record.execution_time_ms,
                "attemptNumber": record.attempt_number,
            },
            "timestamp": triggered_at.isoformat(),
        }

        logger.warning(
            "Job alert triggered",
            alert_id=alert.id,
            job_id=record.job_id,
            alert_type=alert.alert_type.value,
        )

        for channel in alert.notification_channels:
            try:
                if channel is DeliveryChannel.EMAIL:
                    if alert.recipient_emails:
                        await self.distributor.send_job_alert(alert.recipient_emails, alert_data)
                elif channel is DeliveryChannel.WEBHOOK:
                    if alert.webhook_url:
                        await self.distributor.send_webhook_alert(alert.webhook_url, alert_data)
            except Exception as e:
                logger.error(
                    "Alert delivery failed",
                    alert_id=alert.id,
                    channel=channel.value,
                    error=str(e),
                )

        try:
            await self.alerts.mark_triggered(alert.id, triggered_at)
        except Exception as e:
            logger.error("Failed to update alert trigger time", alert_id=alert.id, error=str(e))

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup_old_executions(self, retention_days: int = 30) -> int:
        """Delete completed executions older than the cutoff. Failed rows are kept."""
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        try:
            deleted = await self.executions.delete_completed_before(cutoff)
        except Exception as e:
            logger.error("Failed to clean up job executions", error=str(e))
            return 0

        logger.info(
            "Old job executions deleted",
            retention_days=retention_days,
            cutoff_date=cutoff.isoformat(),
            deleted_count=deleted,
        )
        return deleted


def _records_processed(result: dict[str, Any]) -> int | None:
    if not isinstance(result, dict):
        return None
    inner = result.get("result") if isinstance(result.get("result"), dict) else result
    value = inner.get("records_processed")
    return int(value) if isinstance(value, (int, float)) else None
