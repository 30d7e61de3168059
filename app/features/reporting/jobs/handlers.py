"""
Job type dispatch.

Each JobType maps to exactly one handler; the registry refuses to build if
any type is missing. Handlers parse their payload, apply defaults and
return a JSON-safe result dict.
"""

from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from app.features.reporting.domain.errors import JobValidationError
from app.features.reporting.domain.models import JobType, QueuedJob, ReportFormat
from app.features.reporting.jobs.cleanup_job import ReportingCleanupJob
from app.features.reporting.pipeline.aggregation.service import AggregationService
from app.features.reporting.pipeline.generators.daily_summary import DailySummaryGenerator
from app.features.reporting.pipeline.generators.weekly_summary import (
    WeeklySummaryGenerator,
    previous_full_week,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def parse_date(value: Any, field_name: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise JobValidationError(f"Invalid {field_name}: {value!r}") from e


def parse_format(value: Any) -> ReportFormat:
    if value is None:
        return ReportFormat.PDF
    try:
        return ReportFormat(str(value).lower())
    except ValueError as e:
        raise JobValidationError(f"Unsupported report format: {value!r}") from e


class JobHandlerRegistry:
    def __init__(
        self,
        daily: DailySummaryGenerator,
        weekly: WeeklySummaryGenerator,
        aggregation: AggregationService,
        cleanup: ReportingCleanupJob,
        *,
        timezone: str = "Europe/London",
        default_retention_days: int = 90,
    ):
        self.daily = daily
        self.weekly = weekly
        self.aggregation = aggregation
        self.cleanup = cleanup
        self.tz = ZoneInfo(timezone)
        self.default_retention_days = default_retention_days

        self.handlers: dict[JobType, JobHandler] = {
            JobType.DAILY_SUMMARY: self.handle_daily_summary,
            JobType.WEEKLY_SUMMARY: self.handle_weekly_summary,
            JobType.AGGREGATION: self.handle_aggregation,
            JobType.CLEANUP: self.handle_cleanup,
        }
        missing = [job_type.value for job_type in JobType if job_type not in self.handlers]
        if missing:
            raise RuntimeError(f"No handler registered for job types: {', '.join(missing)}")

    def today(self) -> date:
        return datetime.now(self.tz).date()

    async def dispatch(self, job: QueuedJob) -> dict[str, Any]:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            raise JobValidationError(f"Unknown job type: {job.job_type}")
        return await handler(job.payload or {})

    async def handle_daily_summary(self, payload: dict[str, Any]) -> dict[str, Any]:
        report_date = parse_date(payload.get("report_date"), "report_date") or self.today()
        result = await self.daily.generate(
            report_date,
            template_id=payload.get("template_id"),
            output_format=parse_format(payload.get("format")),
            recipient_ids=payload.get("recipient_ids") or [],
        )
        return result.to_dict()

    async def handle_weekly_summary(self, payload: dict[str, Any]) -> dict[str, Any]:
        week_start = parse_date(payload.get("week_start"), "week_start") or previous_full_week(
            self.today()
        )
        result = await self.weekly.generate(
            week_start,
            template_id=payload.get("template_id"),
            output_format=parse_format(payload.get("format")),
            recipient_ids=payload.get("recipient_ids") or [],
        )
        return result.to_dict()

    async def handle_aggregation(self, payload: dict[str, Any]) -> dict[str, Any]:
        aggregation_date = parse_date(
            payload.get("aggregation_date"), "aggregation_date"
        ) or self.today() - timedelta(days=1)
        return await self.aggregation.process_aggregation(
            payload.get("aggregation_type") or "daily",
            aggregation_date,
            force=bool(payload.get("force", False)),
        )

    async def handle_cleanup(self, payload: dict[str, Any]) -> dict[str, Any]:
        retention_days = payload.get("retention_days", self.default_retention_days)
        if not isinstance(retention_days, int) or isinstance(retention_days, bool):
            raise JobValidationError(f"Invalid retention_days: {retention_days!r}")
        return await self.cleanup.run_cleanup(
            retention_days=retention_days,
            cleanup_type=payload.get("cleanup_type") or "all",
        )
