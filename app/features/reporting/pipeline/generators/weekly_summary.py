"""
Weekly summary report generator.

Covers a Monday to Sunday week and compares it with the week before. Week
totals resolve through weekly_summary_view, then summed daily_aggregations
rows, then live confirmed bookings.
"""

import asyncio
from collections import defaultdict
from datetime import date, timedelta
from typing import Any

from app.features.reporting.domain.models import (
    DailyBreakdownEntry,
    EventPerformance,
    ReportSummary,
    ReportType,
    TrendDirection,
    TrendSummary,
    WeekComparison,
    WeeklyCustomerMetrics,
    WeeklyMetrics,
    WeeklyOverview,
    WeeklySummaryReportData,
)
from app.features.reporting.pipeline.analytics import bookings as breakdowns
from app.features.reporting.pipeline.analytics.calculations import (
    calculate_percentage_change,
    get_trend_direction,
    occupancy_rate,
    resolve_with_fallbacks,
    round2,
    safe_divide,
)
from app.features.reporting.pipeline.generators.base import ReportGenerator
from app.features.reporting.repository.metrics_repository import BookingRecord
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

WEEKLY_REVENUE_MINIMUM = 10000.0
TOP_EVENTS_LIMIT = 5


def week_start_for(day: date) -> date:
    """Monday of the week containing day."""
    return day - timedelta(days=day.weekday())


def previous_full_week(today: date) -> date:
    """Monday of the last complete Monday to Sunday week before today."""
    return week_start_for(today) - timedelta(days=7)


class WeeklySummaryGenerator(ReportGenerator):
    report_type = ReportType.WEEKLY_SUMMARY
    template_name = "Weekly Summary Report"
    sections_generated = 7

    def resolve_period(self, target: date) -> tuple[date, date]:
        start = week_start_for(target)
        return start, start + timedelta(days=6)

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def collect(self, start: date, end: date) -> WeeklySummaryReportData:
        previous_start = start - timedelta(days=7)

        (current, source), (previous, _), bookings, event_rows = await asyncio.gather(
            self.resolve_week_metrics(start),
            self.resolve_week_metrics(previous_start),
            self._safe("bookings", self.metrics.get_bookings(start, end), []),
            self._safe("event_performance", self.metrics.get_event_performance(start, end), []),
        )
        current = current or WeeklyMetrics()
        previous = previous or WeeklyMetrics()
        confirmed = breakdowns.confirmed_only(bookings)

        comparison = WeekComparison(
            bookings_change=calculate_percentage_change(previous.total_bookings, current.total_bookings),
            revenue_change=calculate_percentage_change(previous.total_revenue, current.total_revenue),
            guests_change=calculate_percentage_change(previous.total_guests, current.total_guests),
        )
        trends = TrendSummary(
            booking_trend=get_trend_direction(comparison.bookings_change),
            revenue_trend=get_trend_direction(comparison.revenue_change),
            occupancy_trend=get_trend_direction(
                calculate_percentage_change(
                    previous.average_occupancy_rate, current.average_occupancy_rate
                )
            ),
        )

        report = WeeklySummaryReportData(
            week_start=start,
            week_end=end,
            overview=WeeklyOverview(
                total_bookings=current.total_bookings,
                total_revenue=current.total_revenue,
                total_guests=current.total_guests,
                average_occupancy_rate=current.average_occupancy_rate,
                vs_last_week=comparison,
            ),
            daily_breakdown=self.daily_breakdown(confirmed, start, end),
            top_events=self.top_events(event_rows, confirmed, start),
            customer_metrics=self.customer_metrics(confirmed, start, end),
            top_packages=breakdowns.top_packages(confirmed),
            trends=trends,
            overview_source=source,
        )
        report.recommendations = weekly_recommendations(report, previous)
        report.alerts = weekly_alerts(report)
        return report

    async def resolve_week_metrics(
        self, week_start: date
    ) -> tuple[WeeklyMetrics | None, str | None]:
        week_end = week_start + timedelta(days=6)

        async def from_view() -> WeeklyMetrics | None:
            row = await self.metrics.get_weekly_summary(week_start)
            if not row:
                return None
            return WeeklyMetrics(
                total_bookings=int(row.get("total_bookings") or 0),
                total_revenue=round2(row.get("gross_revenue")),
                total_guests=int(row.get("total_guests") or 0),
                average_occupancy_rate=round2(row.get("avg_occupancy_rate")),
            )

        async def from_aggregations() -> WeeklyMetrics | None:
            rows = await self.metrics.get_daily_aggregations(week_start, week_end)
            if not rows:
                return None
            return WeeklyMetrics(
                total_bookings=sum(int(r.get("confirmed_bookings") or 0) for r in rows),
                total_revenue=round2(sum(float(r.get("gross_revenue") or 0) for r in rows)),
                total_guests=sum(int(r.get("total_guests") or 0) for r in rows),
                average_occupancy_rate=round2(
                    safe_divide(
                        sum(float(r.get("average_occupancy_rate") or 0) for r in rows), len(rows)
                    )
                ),
            )

        async def from_bookings() -> WeeklyMetrics | None:
            confirmed = await self.metrics.get_bookings(
                week_start, week_end, status=breakdowns.CONFIRMED
            )
            if not confirmed:
                return None
            days = self.daily_breakdown(confirmed, week_start, week_end)
            return WeeklyMetrics(
                total_bookings=len(confirmed),
                total_revenue=round2(sum(b.total_amount for b in confirmed)),
                total_guests=sum(b.party_size for b in confirmed),
                average_occupancy_rate=round2(
                    safe_divide(sum(d.occupancy_rate for d in days), len(days))
                ),
            )

        return await resolve_with_fallbacks(
            [
                ("weekly_summary_view", from_view),
                ("daily_aggregations", from_aggregations),
                ("live_bookings", from_bookings),
            ],
            metric=f"weekly_overview:{week_start.isoformat()}",
        )

    def daily_breakdown(
        self, confirmed: list[BookingRecord], start: date, end: date
    ) -> list[DailyBreakdownEntry]:
        by_day: dict[date, list[BookingRecord]] = defaultdict(list)
        for booking in confirmed:
            by_day[booking.booking_date].append(booking)

        entries = []
        for day in self.days_between(start, end):
            rows = by_day.get(day, [])
            entries.append(
                DailyBreakdownEntry(
                    date=day,
                    bookings=len(rows),
                    revenue=round2(sum(b.total_amount for b in rows)),
                    guests=sum(b.party_size for b in rows),
                    occupancy_rate=occupancy_rate(breakdowns.unique_tables(rows), self.table_count),
                )
            )
        return entries

    def top_events(
        self, event_rows: list[dict[str, Any]], confirmed: list[BookingRecord], start: date
    ) -> list[EventPerformance]:
        if event_rows:
            events = [
                EventPerformance(
                    event_name=row.get("event_name") or "Unknown Event",
                    event_date=row.get("event_date"),
                    event_id=str(row["event_id"]) if row.get("event_id") is not None else None,
                    total_bookings=int(row.get("total_bookings") or 0),
                    attendance=int(row.get("total_guests") or 0),
                    revenue=round2(row.get("total_revenue")),
                    occupancy_rate=round2(row.get("table_occupancy_rate")),
                    walk_ins=int(row.get("walk_ins_count") or 0),
                    average_spend_per_guest=round2(row.get("average_spend_per_guest")),
                    check_in_rate=round2(row.get("check_in_rate")),
                    no_show_rate=round2(row.get("no_show_rate")),
                    average_party_size=round2(row.get("average_party_size")),
                )
                for row in event_rows
            ]
            events.sort(key=lambda e: e.revenue, reverse=True)
            return events[:TOP_EVENTS_LIMIT]

        if not confirmed:
            return []
        return breakdowns.events_by_name(confirmed, start, self.table_count)[:TOP_EVENTS_LIMIT]

    def customer_metrics(
        self, confirmed: list[BookingRecord], start: date, end: date
    ) -> WeeklyCustomerMetrics:
        new_customers: set[str] = set()
        returning_bookings = 0
        for booking in confirmed:
            created_on = self.local_date(booking.customer_created_at)
            if created_on is None:
                continue
            if start <= created_on <= end and booking.customer_id:
                new_customers.add(booking.customer_id)
            elif created_on < start:
                returning_bookings += 1

        top = breakdowns.top_customers(confirmed)
        return WeeklyCustomerMetrics(
            new_customers=len(new_customers),
            returning_customers=returning_bookings,
            returning_rate=round2(safe_divide(returning_bookings, len(confirmed)) * 100),
            average_ltv=round2(safe_divide(sum(c.spend for c in top), len(top))),
            top_customers=top,
        )

    # ------------------------------------------------------------------
    # Description
    # ------------------------------------------------------------------

    def build_summary(self, report: WeeklySummaryReportData) -> ReportSummary:
        overview = report.overview
        return ReportSummary(
            title=f"Weekly Summary - {report.week_start:%b %d} to {report.week_end:%b %d, %Y}",
            description="Weekly performance analysis with trends and business intelligence",
            highlights=[
                f"{overview.total_bookings} total bookings",
                f"£{overview.total_revenue:.2f} total revenue",
                f"{overview.total_guests} guests served",
                f"{overview.average_occupancy_rate:.1f}% average occupancy",
            ],
            recommendations=report.recommendations,
            alerts=report.alerts,
        )

    def key_metrics(self, report: WeeklySummaryReportData) -> dict[str, Any]:
        overview = report.overview
        return {
            "totalBookings": overview.total_bookings,
            "totalRevenue": overview.total_revenue,
            "totalGuests": overview.total_guests,
            "averageOccupancyRate": overview.average_occupancy_rate,
            "bookingTrend": report.trends.booking_trend.value,
            "revenueTrend": report.trends.revenue_trend.value,
            "weekOverWeekBookingChange": overview.vs_last_week.bookings_change,
            "weekOverWeekRevenueChange": overview.vs_last_week.revenue_change,
        }

    async def distribute(
        self, report_id: str, recipient_ids: list[str], report: WeeklySummaryReportData
    ) -> None:
        await self.distributor.schedule_weekly_report_distribution(report_id, recipient_ids, report)


def weekly_recommendations(report: WeeklySummaryReportData, previous: WeeklyMetrics) -> list[str]:
    recommendations = []
    trends = report.trends

    if trends.revenue_trend is TrendDirection.DOWN:
        recommendations.append("Revenue declining - implement targeted promotional campaigns")
        recommendations.append("Review pricing strategy and packages to optimize revenue")
    elif trends.revenue_trend is TrendDirection.UP:
        recommendations.append("Strong revenue growth - maintain current strategies")

    if trends.booking_trend is TrendDirection.DOWN:
        recommendations.append("Booking volume decreasing - enhance marketing efforts")
        recommendations.append("Consider loyalty programs to retain existing customers")

    occupancy = report.overview.average_occupancy_rate
    if occupancy < 60:
        recommendations.append("Low occupancy rate - focus on capacity optimization")
    elif occupancy > 85:
        recommendations.append("High occupancy - consider expanding capacity or premium pricing")

    if report.overview.total_revenue < previous.total_revenue * 0.8:
        recommendations.append("Significant revenue drop - urgent review of operations required")

    return recommendations


def weekly_alerts(report: WeeklySummaryReportData) -> list[str]:
    alerts = []
    trends = report.trends

    if report.overview.total_revenue < WEEKLY_REVENUE_MINIMUM:
        alerts.append("Weekly revenue below minimum threshold")

    if trends.revenue_trend is TrendDirection.DOWN and trends.booking_trend is TrendDirection.DOWN:
        alerts.append("Both revenue and bookings declining - immediate action required")

    if report.overview.average_occupancy_rate < 30:
        alerts.append("Critical: Average occupancy below 30%")

    return alerts
