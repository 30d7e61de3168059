"""
Shared report generation pipeline.

Subclasses collect a report payload and describe it (summary, key metrics);
this base class owns the period lock, rendering, the append-only history
row and the hand-off to distribution.
"""

from __future__ import annotations

import time as _time
from collections.abc import Awaitable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

from app.features.reporting.domain.models import (
    GenerationResult,
    ReportFormat,
    ReportGenerationRecord,
    ReportSummary,
    ReportType,
)
from app.features.reporting.jobs.locks import ReportLockManager
from app.features.reporting.pipeline.analytics.calculations import local_date
from app.features.reporting.pipeline.generators.rendering import ReportFileRenderer
from app.features.reporting.repository.metrics_repository import MetricsRepository
from app.features.reporting.repository.report_repository import ReportHistoryRepository
from app.features.reporting.services.distribution_service import EmailDistributor
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Local midnight to the last instant of the day, as aware datetimes."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time.max, tzinfo=tz)
    return start, end


class ReportGenerator:
    report_type: ReportType
    template_name: str
    sections_generated: int

    def __init__(
        self,
        metrics: MetricsRepository,
        history: ReportHistoryRepository,
        renderer: ReportFileRenderer,
        distributor: EmailDistributor,
        locks: ReportLockManager,
        *,
        timezone: str = "Europe/London",
        table_count: int = 16,
    ):
        self.metrics = metrics
        self.history = history
        self.renderer = renderer
        self.distributor = distributor
        self.locks = locks
        self.tz = ZoneInfo(timezone)
        self.table_count = table_count

    # Subclass hooks -----------------------------------------------------

    def resolve_period(self, target: date) -> tuple[date, date]:
        raise NotImplementedError

    async def collect(self, start: date, end: date):
        raise NotImplementedError

    def build_summary(self, report) -> ReportSummary:
        raise NotImplementedError

    def key_metrics(self, report) -> dict[str, Any]:
        raise NotImplementedError

    async def distribute(self, report_id: str, recipient_ids: list[str], report) -> None:
        raise NotImplementedError

    # Pipeline -----------------------------------------------------------

    async def generate(
        self,
        target: date,
        *,
        template_id: str | None = None,
        output_format: ReportFormat = ReportFormat.PDF,
        recipient_ids: list[str] | None = None,
    ) -> GenerationResult:
        start, end = self.resolve_period(target)

        async with self.locks.hold(self.report_type.value, start) as acquired:
            if not acquired:
                return GenerationResult(
                    report_id=None,
                    report_data=None,
                    skipped=True,
                    reason=f"{self.report_type.value} for {start.isoformat()} is already being generated",
                )
            return await self._generate_locked(
                start, end, template_id, output_format, recipient_ids or []
            )

    async def _generate_locked(
        self,
        start: date,
        end: date,
        template_id: str | None,
        output_format: ReportFormat,
        recipient_ids: list[str],
    ) -> GenerationResult:
        started = _time.perf_counter()
        logger.info(
            "Generating report",
            report_type=self.report_type.value,
            period_start=start.isoformat(),
            period_end=end.isoformat(),
        )

        report = await self.collect(start, end)
        summary = self.build_summary(report)

        file_info: dict[str, str] = {}
        if output_format is not ReportFormat.JSON:
            file_info = await self.renderer.render(self.report_type, start, output_format)

        period_start, _ = day_bounds(start, self.tz)
        _, period_end = day_bounds(end, self.tz)
        record = ReportGenerationRecord(
            report_type=self.report_type,
            generated_at=datetime.now(UTC),
            data_period_start=period_start,
            data_period_end=period_end,
            output_format=output_format,
            records_processed=report.overview.total_bookings,
            sections_generated=self.sections_generated,
            report_summary=summary,
            key_metrics=self.key_metrics(report),
            template_id=template_id or await self._resolve_template_id(),
            generation_time_ms=int((_time.perf_counter() - started) * 1000),
            file_path=file_info.get("file_path"),
            file_url=file_info.get("file_url"),
        )
        report_id = await self.history.insert(record)

        if recipient_ids and report_id:
            try:
                await self.distribute(report_id, recipient_ids, report)
            except Exception as e:
                logger.error(
                    "Report distribution failed",
                    report_id=report_id,
                    report_type=self.report_type.value,
                    error=str(e),
                )

        logger.info(
            "Report generated",
            report_id=report_id,
            report_type=self.report_type.value,
            records_processed=record.records_processed,
            generation_time_ms=record.generation_time_ms,
        )

        return GenerationResult(
            report_id=report_id,
            report_data=report,
            file_path=record.file_path,
            file_url=record.file_url,
        )

    async def _resolve_template_id(self) -> str | None:
        try:
            return await self.history.find_system_template_id(self.template_name)
        except Exception as e:
            logger.warning("Template lookup failed", template=self.template_name, error=str(e))
            return None

    async def _safe(self, name: str, awaitable: Awaitable[T], default: T) -> T:
        """Await a sub-query; log and substitute the default if it fails."""
        try:
            return await awaitable
        except Exception as e:
            logger.warning(
                "Report sub-query failed, using default",
                report_type=self.report_type.value,
                query=name,
                error=str(e),
            )
            return default

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        return day_bounds(day, self.tz)

    def local_date(self, value: datetime | None) -> date | None:
        return local_date(value, self.tz)

    @staticmethod
    def days_between(start: date, end: date) -> list[date]:
        return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
