"""
Reporting Cleanup Job - retention enforcement for reporting data.

Runs weekly (Sunday 03:00 venue time, via the job scheduler) to:
1. Delete successful report_generation_history rows past retention
2. Delete completed job_execution_history rows past retention
3. Delete expired report_metrics_cache entries

Design:
- Each step runs independently; one failing step does not stop the others
- Logs all deletions
- cleanup_type narrows the run to a single step
"""

import time
from datetime import UTC, datetime, timedelta
from typing import Any

from app.features.reporting.domain.errors import JobValidationError
from app.features.reporting.repository.metrics_repository import MetricsRepository
from app.features.reporting.repository.report_repository import ReportHistoryRepository
from app.features.reporting.services.monitoring_service import JobMonitor
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLEANUP_TYPES = ("reports", "jobs", "metrics", "all")


class ReportingCleanupJob:
    """
    Background job for reporting data retention.
    """

    def __init__(
        self,
        history: ReportHistoryRepository,
        metrics: MetricsRepository,
        monitor: JobMonitor,
    ):
        self.history = history
        self.metrics = metrics
        self.monitor = monitor

    async def run_cleanup(self, retention_days: int = 90, cleanup_type: str = "all") -> dict[str, Any]:
        """
        Run reporting cleanup.

        Returns:
            dict: {
                "success": bool,
                "records_processed": int,
                "execution_time_ms": int,
                "cleanup_summary": {
                    "reports_deleted": int,
                    "job_executions_deleted": int,
                    "cache_entries_deleted": int,
                    "errors": list,
                },
            }
        """
        if cleanup_type not in CLEANUP_TYPES:
            raise JobValidationError(f"Unknown cleanup type: {cleanup_type}")
        if retention_days < 1:
            raise JobValidationError("retention_days must be at least 1")

        started = time.perf_counter()
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)

        logger.info(
            "Starting reporting cleanup job",
            cleanup_type=cleanup_type,
            retention_days=retention_days,
            cutoff=cutoff.isoformat(),
        )

        summary: dict[str, Any] = {
            "reports_deleted": 0,
            "job_executions_deleted": 0,
            "cache_entries_deleted": 0,
            "errors": [],
        }

        # ================================================================
        # 1. Report generation history
        # ================================================================
        if cleanup_type in ("reports", "all"):
            try:
                summary["reports_deleted"] = await self.history.delete_successful_before(cutoff)
                logger.info("Old reports cleaned up", count=summary["reports_deleted"])
            except Exception as e:
                error_msg = f"Failed to delete old reports: {e}"
                logger.error(error_msg)
                summary["errors"].append(error_msg)

        # ================================================================
        # 2. Job execution history
        # ================================================================
        if cleanup_type in ("jobs", "all"):
            try:
                summary["job_executions_deleted"] = await self.monitor.cleanup_old_executions(
                    retention_days
                )
                logger.info("Old job executions cleaned up", count=summary["job_executions_deleted"])
            except Exception as e:
                error_msg = f"Failed to delete old job executions: {e}"
                logger.error(error_msg)
                summary["errors"].append(error_msg)

        # ================================================================
        # 3. Expired metric cache entries
        # ================================================================
        if cleanup_type in ("metrics", "all"):
            try:
                summary["cache_entries_deleted"] = await self.metrics.delete_expired_cache(
                    datetime.now(UTC)
                )
                logger.info("Expired metric cache cleaned up", count=summary["cache_entries_deleted"])
            except Exception as e:
                error_msg = f"Failed to delete expired metric cache: {e}"
                logger.error(error_msg)
                summary["errors"].append(error_msg)

        records = (
            summary["reports_deleted"]
            + summary["job_executions_deleted"]
            + summary["cache_entries_deleted"]
        )
        execution_time_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "Reporting cleanup job completed",
            records_processed=records,
            execution_time_ms=execution_time_ms,
            errors=len(summary["errors"]),
        )

        return {
            "success": not summary["errors"],
            "records_processed": records,
            "execution_time_ms": execution_time_ms,
            "cleanup_summary": summary,
        }
