"""
Nightly booking aggregation.

Rolls one day of bookings into a daily_aggregations row and refreshes the
daily_overview entry in report_metrics_cache so report generation can skip
the live booking scan.
"""

from __future__ import annotations

import time
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from app.features.reporting.domain.errors import JobValidationError
from app.features.reporting.pipeline.analytics import bookings as breakdowns
from app.features.reporting.pipeline.analytics.calculations import (
    DEFAULT_TABLE_COUNT,
    occupancy_rate,
    round2,
    safe_divide,
)
from app.features.reporting.pipeline.generators.base import day_bounds
from app.features.reporting.pipeline.generators.daily_summary import DAILY_OVERVIEW_KEY
from app.features.reporting.repository.metrics_repository import BookingRecord, MetricsRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_AGGREGATIONS = ("daily",)


class AggregationService:
    def __init__(
        self,
        metrics: MetricsRepository,
        *,
        timezone: str = "Europe/London",
        table_count: int = DEFAULT_TABLE_COUNT,
        cache_ttl_hours: int = 24,
    ):
        self.metrics = metrics
        self.tz = ZoneInfo(timezone)
        self.table_count = table_count
        self.cache_ttl = timedelta(hours=cache_ttl_hours)

    async def process_aggregation(
        self, aggregation_type: str, aggregation_date: date, *, force: bool = False
    ) -> dict[str, Any]:
        if aggregation_type not in SUPPORTED_AGGREGATIONS:
            raise JobValidationError(
                f"Unsupported aggregation type: {aggregation_type}",
                details={"supported": list(SUPPORTED_AGGREGATIONS)},
            )

        started = time.perf_counter()
        records = await self.aggregate_day(aggregation_date, force=force)
        execution_time_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "Aggregation processed",
            aggregation_type=aggregation_type,
            aggregation_date=aggregation_date.isoformat(),
            records_processed=records,
            execution_time_ms=execution_time_ms,
        )
        return {
            "success": True,
            "aggregation_type": aggregation_type,
            "aggregation_date": aggregation_date.isoformat(),
            "records_processed": records,
            "execution_time_ms": execution_time_ms,
        }

    async def aggregate_day(self, day: date, *, force: bool = False) -> int:
        """Returns 1 when a row was written, 0 when an existing row was kept."""
        if not force and await self.metrics.get_daily_aggregation(day):
            logger.info("Daily aggregation already exists, skipping", aggregation_date=day.isoformat())
            return 0

        bookings = await self.metrics.get_bookings(day, day)
        row = self.build_daily_row(bookings, day)

        await self.metrics.upsert_daily_aggregation(day, row)
        await self._refresh_overview_cache(day, row)
        return 1

    def build_daily_row(self, bookings: list[BookingRecord], day: date) -> dict[str, Any]:
        confirmed = breakdowns.confirmed_only(bookings)
        segments = breakdowns.customer_segments(confirmed, day, self.tz)

        gross = sum(b.total_amount for b in confirmed)
        refunds = sum(b.refund_amount for b in bookings)
        tables = breakdowns.unique_tables(confirmed)
        guests = sum(b.party_size for b in confirmed)

        return {
            "total_bookings": len(bookings),
            "confirmed_bookings": len(confirmed),
            "cancelled_bookings": sum(1 for b in bookings if b.status == breakdowns.CANCELLED),
            "total_guests": guests,
            "gross_revenue": round2(gross),
            "deposits_collected": round2(sum(b.deposit_amount for b in bookings)),
            "refunds_issued": round2(refunds),
            "net_revenue": round2(gross - refunds),
            "tables_occupied": tables,
            "average_occupancy_rate": occupancy_rate(tables, self.table_count),
            "average_party_size": round2(safe_divide(guests, len(confirmed))),
            "new_customers": segments.new,
            "returning_customers": segments.returning,
            "vip_bookings": segments.vip,
            "check_ins": sum(1 for b in bookings if b.checked_in_at is not None),
            "no_shows": sum(1 for b in bookings if b.status == breakdowns.NO_SHOW),
            "walk_ins": sum(1 for b in bookings if b.is_walk_in),
            "birthdays_count": sum(1 for b in bookings if breakdowns.has_occasion(b, "birthday")),
            "anniversaries_count": sum(
                1 for b in bookings if breakdowns.has_occasion(b, "anniversary")
            ),
            "corporate_events_count": sum(
                1 for b in bookings if breakdowns.has_occasion(b, "corporate")
            ),
            "average_booking_lead_time_hours": breakdowns.average_lead_time_hours(bookings, self.tz),
        }

    async def _refresh_overview_cache(self, day: date, row: dict[str, Any]) -> None:
        period_start, period_end = day_bounds(day, self.tz)
        overview = {
            "total_bookings": row["confirmed_bookings"],
            "total_revenue": row["gross_revenue"],
            "total_guests": row["total_guests"],
            "tables_occupied": row["tables_occupied"],
            "occupancy_rate": row["average_occupancy_rate"],
        }
        try:
            await self.metrics.upsert_cached_metric(
                DAILY_OVERVIEW_KEY,
                period_start,
                period_end,
                overview,
                datetime.now(UTC) + self.cache_ttl,
            )
        except Exception as e:
            logger.warning(
                "Failed to refresh overview cache", aggregation_date=day.isoformat(), error=str(e)
            )
