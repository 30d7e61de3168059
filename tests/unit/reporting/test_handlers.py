from datetime import date, timedelta
from enum import Enum

import pytest

from app.features.reporting.domain.errors import JobValidationError
from app.features.reporting.domain.models import JobPriority, JobType, QueuedJob, ReportFormat
from app.features.reporting.jobs import handlers as handlers_module
from app.features.reporting.jobs.defaults import DEFAULT_JOBS
from app.features.reporting.jobs.handlers import JobHandlerRegistry, parse_date, parse_format
from app.features.reporting.pipeline.generators.weekly_summary import previous_full_week


def queued(job_type: JobType, **payload) -> QueuedJob:
    return QueuedJob(
        id=f"{job_type.value}:1",
        name=job_type.value,
        job_type=job_type,
        payload=payload,
        priority=JobPriority.NORMAL.value_rank,
        max_attempts=1,
    )


def test_every_job_type_has_a_handler(reporting):
    handlers = reporting.scheduler.handlers.handlers
    assert set(handlers) == set(JobType)


def test_missing_handler_refuses_to_build(reporting, monkeypatch):
    class ExtendedJobType(str, Enum):
        DAILY_SUMMARY = "daily_summary"
        WEEKLY_SUMMARY = "weekly_summary"
        AGGREGATION = "aggregation"
        CLEANUP = "cleanup"
        EXPORT = "export"

    monkeypatch.setattr(handlers_module, "JobType", ExtendedJobType)

    with pytest.raises(RuntimeError, match="export"):
        JobHandlerRegistry(
            reporting.daily_generator,
            reporting.weekly_generator,
            reporting.aggregation,
            reporting.cleanup,
        )


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        ("", None),
        ("2024-03-08", date(2024, 3, 8)),
        ("2024-03-08T22:00:00Z", date(2024, 3, 8)),
        (date(2024, 3, 8), date(2024, 3, 8)),
    ],
)
def test_parse_date(value, expected):
    assert parse_date(value, "report_date") == expected


def test_parse_date_rejects_garbage():
    with pytest.raises(JobValidationError):
        parse_date("yesterday", "report_date")


def test_parse_format():
    assert parse_format(None) is ReportFormat.PDF
    assert parse_format("EXCEL") is ReportFormat.EXCEL
    with pytest.raises(JobValidationError):
        parse_format("docx")


@pytest.mark.asyncio
async def test_daily_summary_defaults_to_today(reporting, history):
    registry = reporting.scheduler.handlers

    result = await registry.dispatch(queued(JobType.DAILY_SUMMARY, format="json"))

    assert result["report_id"] == "report-1"
    assert result["records_processed"] == 0
    assert result["file_path"] is None
    assert history.records[0].data_period_start.date() == registry.today()


@pytest.mark.asyncio
async def test_weekly_summary_defaults_to_previous_full_week(reporting):
    registry = reporting.scheduler.handlers

    result = await registry.dispatch(queued(JobType.WEEKLY_SUMMARY))

    expected = previous_full_week(registry.today())
    assert result["report_data"]["week_start"] == expected.isoformat()


@pytest.mark.asyncio
async def test_aggregation_defaults_to_yesterday(reporting, metrics):
    registry = reporting.scheduler.handlers

    result = await registry.dispatch(queued(JobType.AGGREGATION))

    yesterday = registry.today() - timedelta(days=1)
    assert result["aggregation_type"] == "daily"
    assert result["aggregation_date"] == yesterday.isoformat()
    assert yesterday in metrics.aggregations


@pytest.mark.asyncio
async def test_cleanup_rejects_non_integer_retention(reporting):
    registry = reporting.scheduler.handlers

    with pytest.raises(JobValidationError):
        await registry.dispatch(queued(JobType.CLEANUP, retention_days="90"))


def test_default_jobs_table():
    schedule = {
        job.name: (job.job_type, job.cron_expression, job.priority, job.max_attempts, job.timeout_ms)
        for job in DEFAULT_JOBS
    }

    assert schedule == {
        "daily-summary-report": (JobType.DAILY_SUMMARY, "0 22 * * *", JobPriority.HIGH, 3, 300_000),
        "weekly-summary-report": (JobType.WEEKLY_SUMMARY, "0 9 * * MON", JobPriority.HIGH, 3, 600_000),
        "daily-aggregation-processing": (JobType.AGGREGATION, "0 2 * * *", JobPriority.NORMAL, 2, 1_800_000),
        "weekly-cleanup": (JobType.CLEANUP, "0 3 * * SUN", JobPriority.LOW, 1, 600_000),
    }
