"""
Daily summary report generator.

Overview metrics resolve through three tiers: the report_metrics_cache entry
written by the aggregation job, the daily_aggregations row, then live
confirmed bookings. The remaining sections are computed from the day's
bookings.
"""

import asyncio
from datetime import date
from typing import Any

from app.features.reporting.domain.models import (
    DailySummaryReportData,
    OverviewMetrics,
    ReportSummary,
    ReportType,
)
from app.features.reporting.pipeline.analytics import bookings as breakdowns
from app.features.reporting.pipeline.analytics.calculations import (
    resolve_with_fallbacks,
    round2,
)
from app.features.reporting.pipeline.generators.base import ReportGenerator
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DAILY_OVERVIEW_KEY = "daily_overview"
DAILY_REVENUE_TARGET = 2000.0


class DailySummaryGenerator(ReportGenerator):
    report_type = ReportType.DAILY_SUMMARY
    template_name = "Daily Summary Report"
    sections_generated = 6

    def resolve_period(self, target: date) -> tuple[date, date]:
        return target, target

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect(self, start: date, end: date) -> DailySummaryReportData:
        day = start
        (overview, source), bookings, waitlist = await asyncio.gather(
            self.resolve_overview(day),
            self._safe("bookings", self.metrics.get_bookings(day, day), []),
            self._safe("waitlist", self.metrics.get_waitlist_count(day, day), 0),
        )
        confirmed = breakdowns.confirmed_only(bookings)

        report = DailySummaryReportData(
            date=day,
            overview=overview or OverviewMetrics(),
            bookings=breakdowns.booking_breakdown(bookings, waitlist),
            revenue=breakdowns.revenue_breakdown(confirmed),
            events=breakdowns.events_by_name(confirmed, day, self.table_count),
            customers=breakdowns.customer_segments(confirmed, day, self.tz),
            top_packages=breakdowns.top_packages(confirmed),
            overview_source=source,
        )
        report.recommendations = daily_recommendations(report)
        report.alerts = daily_alerts(report)
        return report

    async def resolve_overview(self, day: date) -> tuple[OverviewMetrics | None, str | None]:
        period_start, period_end = self.day_bounds(day)

        async def from_cache() -> OverviewMetrics | None:
            cached = await self.metrics.get_cached_metric(DAILY_OVERVIEW_KEY, period_start, period_end)
            return overview_from_mapping(cached) if cached else None

        async def from_aggregation() -> OverviewMetrics | None:
            row = await self.metrics.get_daily_aggregation(day)
            if not row:
                return None
            return OverviewMetrics(
                total_bookings=int(row.get("confirmed_bookings") or 0),
                total_revenue=round2(row.get("gross_revenue")),
                total_guests=int(row.get("total_guests") or 0),
                tables_occupied=int(row.get("tables_occupied") or 0),
                occupancy_rate=round2(row.get("average_occupancy_rate")),
            )

        async def from_bookings() -> OverviewMetrics | None:
            confirmed = await self.metrics.get_bookings(day, day, status=breakdowns.CONFIRMED)
            if not confirmed:
                return None
            return breakdowns.overview_from_bookings(confirmed, self.table_count)

        return await resolve_with_fallbacks(
            [
                ("metrics_cache", from_cache),
                ("daily_aggregations", from_aggregation),
                ("live_bookings", from_bookings),
            ],
            metric=DAILY_OVERVIEW_KEY,
        )

    # ------------------------------------------------------------------
    # Description
    # ------------------------------------------------------------------

    def build_summary(self, report: DailySummaryReportData) -> ReportSummary:
        return ReportSummary(
            title=f"Daily Summary - {report.date:%b %d, %Y}",
            description="Comprehensive daily operational summary for The Backroom Leeds",
            highlights=[
                f"{report.overview.total_bookings} total bookings",
                f"£{report.revenue.gross:.2f} gross revenue",
                f"{report.overview.total_guests} guests served",
                f"{report.overview.occupancy_rate:.1f}% table occupancy",
            ],
            recommendations=report.recommendations,
            alerts=report.alerts,
        )

    def key_metrics(self, report: DailySummaryReportData) -> dict[str, Any]:
        return {
            "totalBookings": report.overview.total_bookings,
            "totalRevenue": report.revenue.gross,
            "totalGuests": report.overview.total_guests,
            "occupancyRate": report.overview.occupancy_rate,
            "averagePartySize": report.bookings.average_party_size,
            "revenuePerGuest": report.revenue.per_guest,
            "noShowRate": round2(report.no_show_rate),
        }

    async def distribute(
        self, report_id: str, recipient_ids: list[str], report: DailySummaryReportData
    ) -> None:
        await self.distributor.schedule_daily_report_distribution(report_id, recipient_ids, report)


def overview_from_mapping(data: dict[str, Any]) -> OverviewMetrics:
    """Accepts the cached JSON shape (camelCase or snake_case keys)."""

    def pick(*keys: str) -> Any:
        for key in keys:
            if data.get(key) is not None:
                return data[key]
        return 0

    return OverviewMetrics(
        total_bookings=int(pick("total_bookings", "totalBookings")),
        total_revenue=round2(pick("total_revenue", "totalRevenue")),
        total_guests=int(pick("total_guests", "totalGuests")),
        tables_occupied=int(pick("tables_occupied", "tablesOccupied")),
        occupancy_rate=round2(pick("occupancy_rate", "occupancyRate")),
    )


def daily_recommendations(report: DailySummaryReportData) -> list[str]:
    recommendations = []

    if report.overview.occupancy_rate < 60:
        recommendations.append("Consider promotional offers to increase table bookings")
    elif report.overview.occupancy_rate > 90:
        recommendations.append("High occupancy achieved - maintain service quality standards")

    if report.revenue.per_guest < 40:
        recommendations.append("Implement upselling strategies to increase average spend per guest")

    if report.no_show_rate > 10:
        recommendations.append(
            "High no-show rate detected - consider deposit increase or confirmation calls"
        )

    if report.bookings.average_party_size < 3:
        recommendations.append("Promote group packages to increase average party size")

    return recommendations


def daily_alerts(report: DailySummaryReportData) -> list[str]:
    alerts = []

    if report.revenue.gross < DAILY_REVENUE_TARGET:
        alerts.append("Daily revenue below target threshold")

    if report.cancellation_rate > 15:
        alerts.append("High cancellation rate requires investigation")

    if report.overview.occupancy_rate < 40:
        alerts.append("Low table occupancy - marketing intervention recommended")

    return alerts
