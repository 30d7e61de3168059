from datetime import UTC, date, datetime, timedelta

import pytest

from app.features.reporting.domain.models import TrendDirection
from app.features.reporting.jobs.locks import report_lock_key
from app.features.reporting.pipeline.generators.weekly_summary import (
    previous_full_week,
    week_start_for,
)
from tests.factories import make_booking

MONDAY = date(2024, 3, 4)
WEDNESDAY = date(2024, 3, 6)
FRIDAY = date(2024, 3, 8)
PREVIOUS_MONDAY = MONDAY - timedelta(days=7)


def test_week_boundaries():
    assert week_start_for(WEDNESDAY) == MONDAY
    assert week_start_for(MONDAY) == MONDAY
    assert week_start_for(date(2024, 3, 10)) == MONDAY
    assert previous_full_week(date(2024, 3, 11)) == MONDAY
    assert previous_full_week(date(2024, 3, 13)) == MONDAY


@pytest.mark.asyncio
async def test_uses_weekly_view_and_compares_with_previous_week(reporting, metrics, history):
    metrics.weekly_summaries[MONDAY] = {
        "total_bookings": 100,
        "gross_revenue": 12000,
        "total_guests": 400,
        "avg_occupancy_rate": 70,
    }
    metrics.weekly_summaries[PREVIOUS_MONDAY] = {
        "total_bookings": 80,
        "gross_revenue": 10000,
        "total_guests": 380,
        "avg_occupancy_rate": 70,
    }

    result = await reporting.weekly_generator.generate(WEDNESDAY)

    report = result.report_data
    assert report.week_start == MONDAY
    assert report.week_end == date(2024, 3, 10)
    assert report.overview_source == "weekly_summary_view"
    assert report.overview.vs_last_week.bookings_change == 25.0
    assert report.overview.vs_last_week.revenue_change == 20.0
    assert report.trends.booking_trend is TrendDirection.UP
    assert report.trends.revenue_trend is TrendDirection.UP
    assert report.trends.occupancy_trend is TrendDirection.STABLE
    assert "Strong revenue growth - maintain current strategies" in report.recommendations
    assert report.alerts == []

    (record,) = history.records
    assert record.records_processed == 100
    assert record.sections_generated == 7
    assert record.template_id == "tpl-weekly"
    assert record.file_path == "/reports/weekly/weekly-summary-2024-03-04.pdf"
    assert record.key_metrics["bookingTrend"] == "up"
    assert record.key_metrics["weekOverWeekRevenueChange"] == 20.0


@pytest.mark.asyncio
async def test_falls_back_to_summed_daily_aggregations(reporting, metrics):
    metrics.fail_on = {"get_weekly_summary"}
    for offset in range(7):
        metrics.aggregations[MONDAY + timedelta(days=offset)] = {
            "confirmed_bookings": 2,
            "gross_revenue": 100,
            "total_guests": 8,
            "average_occupancy_rate": 25,
        }

    report = (await reporting.weekly_generator.generate(MONDAY)).report_data

    assert report.overview_source == "daily_aggregations"
    assert report.overview.total_bookings == 14
    assert report.overview.total_revenue == 700.0
    assert report.overview.total_guests == 56
    assert report.overview.average_occupancy_rate == 25.0


@pytest.mark.asyncio
async def test_falls_back_to_live_bookings(reporting, metrics, fake_distributor):
    metrics.bookings = [
        make_booking(MONDAY, total_amount=120.0, party_size=6, table_id="t1"),
        make_booking(MONDAY, total_amount=80.0, party_size=2, table_id="t2"),
        make_booking(FRIDAY, total_amount=300.0, party_size=10, table_id="t1", event_name="BELLA GENTE"),
        make_booking(FRIDAY, status="cancelled", total_amount=999.0),
    ]

    result = await reporting.weekly_generator.generate(MONDAY, recipient_ids=["ops"])
    report = result.report_data

    assert report.overview_source == "live_bookings"
    assert report.overview.total_bookings == 3
    assert report.overview.total_revenue == 500.0
    assert report.overview.total_guests == 18
    # (12.5 + 6.25) averaged over seven nights
    assert report.overview.average_occupancy_rate == 2.68
    assert report.overview.vs_last_week.bookings_change == 100.0
    assert "Weekly revenue below minimum threshold" in report.alerts
    assert "Critical: Average occupancy below 30%" in report.alerts

    assert [d.date for d in report.daily_breakdown] == [MONDAY + timedelta(days=i) for i in range(7)]
    assert report.daily_breakdown[0].bookings == 2
    assert report.daily_breakdown[0].revenue == 200.0
    assert report.daily_breakdown[4].guests == 10
    assert report.top_events[0].event_name == "BELLA GENTE"
    assert fake_distributor.reports == [("weekly", result.report_id, ["ops"])]


@pytest.mark.asyncio
async def test_top_events_come_from_event_rows(reporting, metrics):
    metrics.event_rows = [
        {
            "event_id": i,
            "event_name": f"Event {i}",
            "event_date": MONDAY + timedelta(days=i % 7),
            "total_bookings": i,
            "total_guests": i * 4,
            "total_revenue": i * 100,
        }
        for i in range(1, 7)
    ]

    report = (await reporting.weekly_generator.generate(MONDAY)).report_data

    assert [e.event_name for e in report.top_events] == [f"Event {i}" for i in (6, 5, 4, 3, 2)]
    assert report.top_events[0].event_id == "6"
    assert report.top_events[0].attendance == 24


@pytest.mark.asyncio
async def test_customer_metrics_split_new_and_returning(reporting, metrics):
    in_week = datetime(2024, 3, 5, 12, tzinfo=UTC)
    metrics.bookings = [
        make_booking(WEDNESDAY, customer_id="c-new", customer_created_at=in_week, total_amount=90.0),
        make_booking(FRIDAY, customer_id="c-regular", customer_name="Sam Regular", total_amount=400.0),
        make_booking(FRIDAY, customer_id="c-regular", total_amount=100.0),
    ]

    metrics_out = (await reporting.weekly_generator.generate(MONDAY)).report_data.customer_metrics

    assert metrics_out.new_customers == 1
    assert metrics_out.returning_customers == 2
    assert metrics_out.returning_rate == 66.67
    assert metrics_out.top_customers[0].customer_id == "c-regular"
    assert metrics_out.top_customers[0].name == "Sam Regular"
    assert metrics_out.top_customers[0].spend == 500.0
    assert metrics_out.average_ltv == 295.0


@pytest.mark.asyncio
async def test_declining_week_raises_alerts(reporting, metrics):
    metrics.weekly_summaries[MONDAY] = {
        "total_bookings": 50,
        "gross_revenue": 5000,
        "total_guests": 200,
        "avg_occupancy_rate": 20,
    }
    metrics.weekly_summaries[PREVIOUS_MONDAY] = {
        "total_bookings": 100,
        "gross_revenue": 10000,
        "total_guests": 400,
        "avg_occupancy_rate": 40,
    }

    report = (await reporting.weekly_generator.generate(MONDAY)).report_data

    assert report.trends.revenue_trend is TrendDirection.DOWN
    assert "Both revenue and bookings declining - immediate action required" in report.alerts
    assert "Significant revenue drop - urgent review of operations required" in report.recommendations


@pytest.mark.asyncio
async def test_weekly_generation_skips_locked_week(reporting, fake_redis, history):
    await fake_redis.acquire_lock(report_lock_key("weekly_summary", MONDAY), "other", 60)

    result = await reporting.weekly_generator.generate(FRIDAY)

    assert result.skipped is True
    assert history.records == []
