"""
Recurring jobs registered when the worker starts.

All schedules are in venue local time.
"""

from dataclasses import dataclass, field
from typing import Any

from app.features.reporting.domain.models import JobPriority, JobType


@dataclass(frozen=True, slots=True)
class DefaultJob:
    name: str
    job_type: JobType
    cron_expression: str
    priority: JobPriority
    max_attempts: int
    timeout_ms: int
    description: str
    payload: dict[str, Any] = field(default_factory=dict)


DEFAULT_JOBS: tuple[DefaultJob, ...] = (
    DefaultJob(
        name="daily-summary-report",
        job_type=JobType.DAILY_SUMMARY,
        cron_expression="0 22 * * *",
        priority=JobPriority.HIGH,
        max_attempts=3,
        timeout_ms=300_000,
        description="Daily operational summary, generated at close of business",
    ),
    DefaultJob(
        name="weekly-summary-report",
        job_type=JobType.WEEKLY_SUMMARY,
        cron_expression="0 9 * * MON",
        priority=JobPriority.HIGH,
        max_attempts=3,
        timeout_ms=600_000,
        description="Weekly performance summary for the previous Monday to Sunday",
    ),
    DefaultJob(
        name="daily-aggregation-processing",
        job_type=JobType.AGGREGATION,
        cron_expression="0 2 * * *",
        priority=JobPriority.NORMAL,
        max_attempts=2,
        timeout_ms=1_800_000,
        description="Pre-computes yesterday's daily_aggregations row",
    ),
    DefaultJob(
        name="weekly-cleanup",
        job_type=JobType.CLEANUP,
        cron_expression="0 3 * * SUN",
        priority=JobPriority.LOW,
        max_attempts=1,
        timeout_ms=600_000,
        description="Removes reporting data past its retention window",
        payload={"retention_days": 90},
    ),
)
