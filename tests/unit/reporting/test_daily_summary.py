from datetime import date
from zoneinfo import ZoneInfo

import pytest

from app.features.reporting.domain.models import ReportFormat
from app.features.reporting.jobs.locks import report_lock_key
from app.features.reporting.pipeline.generators.base import day_bounds
from app.features.reporting.pipeline.generators.daily_summary import (
    DAILY_OVERVIEW_KEY,
    overview_from_mapping,
)
from tests.factories import make_booking

FRIDAY = date(2024, 3, 8)


def seed_night(metrics, count=10, amount=50.0):
    metrics.bookings = [
        make_booking(FRIDAY, total_amount=amount, party_size=4, table_id=f"t{i}") for i in range(count)
    ]


@pytest.mark.asyncio
async def test_generates_from_live_bookings(reporting, metrics, history, fake_distributor):
    seed_night(metrics)
    metrics.bookings += [
        make_booking(FRIDAY, status="cancelled", total_amount=80.0),
        make_booking(FRIDAY, status="no_show", total_amount=40.0),
    ]

    result = await reporting.daily_generator.generate(FRIDAY, recipient_ids=["r1"])

    (record,) = history.records
    assert result.report_id == record.id
    assert record.records_processed == 10
    assert record.key_metrics["totalBookings"] == 10
    assert record.key_metrics["totalRevenue"] == 500.0
    assert record.key_metrics["totalGuests"] == 40
    assert record.key_metrics["occupancyRate"] == 62.5
    assert record.key_metrics["revenuePerGuest"] == 12.5
    assert record.template_id == "tpl-daily"
    assert record.sections_generated == 6
    assert record.file_path == "/reports/daily/daily-summary-2024-03-08.pdf"
    assert record.file_url == "https://reports.example.com/api/reports/download/daily-summary-2024-03-08.pdf"
    assert record.report_summary.title == "Daily Summary - Mar 08, 2024"

    report = result.report_data
    assert report.overview_source == "live_bookings"
    assert report.bookings.cancelled == 1
    assert report.bookings.no_shows == 1
    assert report.events[0].event_name == "BELLA GENTE"
    assert fake_distributor.reports == [("daily", record.id, ["r1"])]


@pytest.mark.asyncio
async def test_falls_back_to_aggregation_row_when_cache_fails(reporting, metrics, history):
    metrics.fail_on = {"get_cached_metric"}
    metrics.aggregations[FRIDAY] = {
        "confirmed_bookings": 7,
        "gross_revenue": 1234.5,
        "total_guests": 30,
        "tables_occupied": 8,
        "average_occupancy_rate": 50.0,
    }

    result = await reporting.daily_generator.generate(FRIDAY)

    overview = result.report_data.overview
    assert result.report_data.overview_source == "daily_aggregations"
    assert overview.total_bookings == 7
    assert overview.total_revenue == 1234.5
    assert overview.total_guests == 30
    assert history.records[0].records_processed == 7
    assert history.records[0].key_metrics["occupancyRate"] == 50.0


@pytest.mark.asyncio
async def test_cache_entry_takes_precedence(reporting, metrics):
    start, end = day_bounds(FRIDAY, ZoneInfo("Europe/London"))
    metrics.cache[(DAILY_OVERVIEW_KEY, start, end)] = {
        "totalBookings": 3,
        "totalRevenue": 150,
        "totalGuests": 9,
        "tablesOccupied": 3,
        "occupancyRate": 18.75,
    }
    metrics.aggregations[FRIDAY] = {"confirmed_bookings": 99}

    result = await reporting.daily_generator.generate(FRIDAY)

    assert result.report_data.overview_source == "metrics_cache"
    assert result.report_data.overview.total_bookings == 3


@pytest.mark.asyncio
async def test_empty_day_produces_zeroed_report(reporting, history):
    result = await reporting.daily_generator.generate(FRIDAY, output_format=ReportFormat.JSON)

    report = result.report_data
    assert report.overview.total_bookings == 0
    assert report.revenue.per_guest == 0.0
    assert [e.event_name for e in report.events] == ["BELLA GENTE"]
    assert report.events[0].total_bookings == 0
    assert "Daily revenue below target threshold" in report.alerts
    assert history.records[0].file_path is None
    assert history.records[0].file_url is None


@pytest.mark.asyncio
async def test_skips_when_period_is_locked(reporting, fake_redis, history):
    await fake_redis.acquire_lock(report_lock_key("daily_summary", FRIDAY), "other-worker", 60)

    result = await reporting.daily_generator.generate(FRIDAY)

    assert result.skipped is True
    assert "already being generated" in result.reason
    assert result.to_dict() == {"skipped": True, "reason": result.reason}
    assert history.records == []


@pytest.mark.asyncio
async def test_sequential_runs_append_history(reporting, metrics, history, fake_redis):
    seed_night(metrics, count=2)

    await reporting.daily_generator.generate(FRIDAY)
    await reporting.daily_generator.generate(FRIDAY)

    assert [r.id for r in history.records] == ["report-1", "report-2"]
    assert report_lock_key("daily_summary", FRIDAY) not in fake_redis.store


@pytest.mark.asyncio
async def test_distribution_failure_does_not_fail_generation(reporting, metrics, history, fake_distributor):
    seed_night(metrics, count=1)

    async def broken(report_id, recipient_ids, report_data):
        raise RuntimeError("mail provider down")

    fake_distributor.schedule_daily_report_distribution = broken

    result = await reporting.daily_generator.generate(FRIDAY, recipient_ids=["r1"])

    assert result.report_id == "report-1"
    assert len(history.records) == 1


@pytest.mark.asyncio
async def test_failed_sub_queries_fall_back_to_defaults(reporting, metrics):
    seed_night(metrics, count=2)
    metrics.fail_on = {"get_waitlist_count"}

    result = await reporting.daily_generator.generate(FRIDAY)

    assert result.report_data.bookings.waitlist == 0
    assert result.report_data.overview.total_bookings == 2


@pytest.mark.asyncio
async def test_customer_segments_and_packages(reporting, metrics):
    metrics.bookings = [
        make_booking(FRIDAY, is_vip=True, drinks_package="Prosecco", total_amount=200.0),
        make_booking(FRIDAY, special_occasion="birthday", drinks_package="Prosecco", total_amount=100.0),
        make_booking(FRIDAY, special_requests={"note": "anniversary dinner"}, drinks_package="Gin"),
    ]

    report = (await reporting.daily_generator.generate(FRIDAY)).report_data

    assert report.customers.vip == 1
    assert report.customers.birthdays == 1
    assert report.customers.anniversaries == 1
    assert [(p.package_name, p.bookings, p.revenue) for p in report.top_packages] == [
        ("Prosecco", 2, 300.0),
        ("Gin", 1, 50.0),
    ]


def test_overview_from_mapping_accepts_both_key_styles():
    snake = overview_from_mapping({"total_bookings": 4, "total_revenue": 10.5})
    camel = overview_from_mapping({"totalBookings": 4, "totalRevenue": 10.5})

    assert snake == camel
    assert snake.total_bookings == 4
    assert snake.total_revenue == 10.5
    assert snake.occupancy_rate == 0.0
