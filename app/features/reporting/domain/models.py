"""
Domain models for the reporting job pipeline.

Enums mirror the values stored in Postgres and on the queue. Dataclasses
describe scheduled jobs, execution history rows, alert rules, report
generation records and the in-memory report payloads. They carry no I/O so
repositories, services and the API layer can share them.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class JobType(str, Enum):
    DAILY_SUMMARY = "daily_summary"
    WEEKLY_SUMMARY = "weekly_summary"
    AGGREGATION = "aggregation"
    CLEANUP = "cleanup"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def value_rank(self) -> int:
        """Numeric dequeue rank, lower is served first."""
        return PRIORITY_RANKS[self]


PRIORITY_RANKS: dict[JobPriority, int] = {
    JobPriority.CRITICAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.NORMAL: 3,
    JobPriority.LOW: 4,
}


class AlertType(str, Enum):
    FAILURE = "failure"
    CONSECUTIVE_FAILURES = "consecutive_failures"
    SLOW_EXECUTION = "slow_execution"
    TIMEOUT = "timeout"


class DeliveryChannel(str, Enum):
    EMAIL = "email"
    WEBHOOK = "webhook"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PENDING_VERIFICATION = "pending_verification"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class ReportFormat(str, Enum):
    PDF = "pdf"
    EXCEL = "excel"
    CSV = "csv"
    HTML = "html"
    JSON = "json"


class ReportType(str, Enum):
    DAILY_SUMMARY = "daily_summary"
    WEEKLY_SUMMARY = "weekly_summary"


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ScheduledJob:
    """A named recurring or one-off unit of work."""

    id: str
    name: str
    job_type: JobType
    payload: dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    timezone: str = "Europe/London"
    max_attempts: int = 3
    timeout_ms: int | None = None
    cron_expression: str | None = None
    delay_ms: int | None = None
    description: str | None = None

    @property
    def is_recurring(self) -> bool:
        return self.cron_expression is not None


@dataclass(slots=True)
class QueuedJob:
    """One queue entry: a one-off job or a single firing of a recurring job."""

    id: str
    name: str
    job_type: JobType
    payload: dict[str, Any]
    priority: int
    max_attempts: int
    attempts_made: int = 0
    timeout_ms: int | None = None
    repeat_id: str | None = None
    state: str = "waiting"
    created_at: datetime | None = None
    run_at: datetime | None = None
    processed_at: datetime | None = None
    finished_at: datetime | None = None
    failed_reason: str | None = None
    return_value: dict[str, Any] | None = None
    paused_from: str | None = None

    @property
    def scheduled_job_id(self) -> str:
        """Id of the ScheduledJob this entry belongs to."""
        return self.repeat_id or self.id


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class JobExecutionRecord:
    """One attempt of a scheduled job (job_execution_history row)."""

    job_id: str
    execution_id: str
    status: JobStatus
    attempt_number: int = 1
    started_at: datetime | None = None
    completed_at: datetime | None = None
    execution_time_ms: int | None = None
    error_message: str | None = None
    error_stack: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    cpu_usage_percent: float | None = None
    memory_usage_mb: int | None = None
    records_processed: int | None = None
    id: str | None = None


@dataclass(slots=True)
class JobAlert:
    """An alert rule bound to a scheduled job."""

    id: str
    job_id: str
    alert_type: AlertType
    notification_channels: list[DeliveryChannel]
    threshold_value: float | None = None
    recipient_emails: list[str] = field(default_factory=list)
    webhook_url: str | None = None
    enabled: bool = True
    last_triggered_at: datetime | None = None


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SubscriptionResult:
    subscription_id: str
    status: SubscriptionStatus
    next_delivery_at: datetime | None = None
    reactivated: bool = False


# ---------------------------------------------------------------------------
# Report payloads
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class OverviewMetrics:
    total_bookings: int = 0
    total_revenue: float = 0.0
    total_guests: int = 0
    tables_occupied: int = 0
    occupancy_rate: float = 0.0


@dataclass(slots=True)
class BookingBreakdown:
    confirmed: int = 0
    cancelled: int = 0
    no_shows: int = 0
    walk_ins: int = 0
    waitlist: int = 0
    average_party_size: float = 0.0


@dataclass(slots=True)
class RevenueBreakdown:
    gross: float = 0.0
    net: float = 0.0
    deposits: float = 0.0
    refunds: float = 0.0
    per_guest: float = 0.0
    per_table: float = 0.0


@dataclass(slots=True)
class EventPerformance:
    event_name: str
    event_date: date | None = None
    event_id: str | None = None
    total_bookings: int = 0
    attendance: int = 0
    revenue: float = 0.0
    occupancy_rate: float = 0.0
    walk_ins: int = 0
    average_spend_per_guest: float = 0.0
    check_in_rate: float = 0.0
    no_show_rate: float = 0.0
    average_party_size: float = 0.0


@dataclass(slots=True)
class CustomerSegments:
    new: int = 0
    returning: int = 0
    vip: int = 0
    birthdays: int = 0
    anniversaries: int = 0


@dataclass(slots=True)
class PackagePerformance:
    package_name: str
    bookings: int = 0
    revenue: float = 0.0


@dataclass(slots=True)
class DailySummaryReportData:
    date: date
    overview: OverviewMetrics
    bookings: BookingBreakdown
    revenue: RevenueBreakdown
    events: list[EventPerformance]
    customers: CustomerSegments
    top_packages: list[PackagePerformance]
    recommendations: list[str] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)
    overview_source: str | None = None

    @property
    def no_show_rate(self) -> float:
        if self.overview.total_bookings <= 0:
            return 0.0
        return self.bookings.no_shows / self.overview.total_bookings * 100

    @property
    def cancellation_rate(self) -> float:
        if self.overview.total_bookings <= 0:
            return 0.0
        return self.bookings.cancelled / self.overview.total_bookings * 100

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(slots=True)
class WeeklyMetrics:
    total_bookings: int = 0
    total_revenue: float = 0.0
    total_guests: int = 0
    average_occupancy_rate: float = 0.0


@dataclass(slots=True)
class WeekComparison:
    bookings_change: float = 0.0
    revenue_change: float = 0.0
    guests_change: float = 0.0


@dataclass(slots=True)
class WeeklyOverview:
    total_bookings: int
    total_revenue: float
    total_guests: int
    average_occupancy_rate: float
    vs_last_week: WeekComparison


@dataclass(slots=True)
class DailyBreakdownEntry:
    date: date
    bookings: int = 0
    revenue: float = 0.0
    guests: int = 0
    occupancy_rate: float = 0.0


@dataclass(slots=True)
class TopCustomer:
    customer_id: str
    name: str
    bookings: int = 0
    spend: float = 0.0


@dataclass(slots=True)
class WeeklyCustomerMetrics:
    new_customers: int = 0
    returning_customers: int = 0
    returning_rate: float = 0.0
    average_ltv: float = 0.0
    top_customers: list[TopCustomer] = field(default_factory=list)


@dataclass(slots=True)
class TrendSummary:
    booking_trend: TrendDirection = TrendDirection.STABLE
    revenue_trend: TrendDirection = TrendDirection.STABLE
    occupancy_trend: TrendDirection = TrendDirection.STABLE


@dataclass(slots=True)
class WeeklySummaryReportData:
    week_start: date
    week_end: date
    overview: WeeklyOverview
    daily_breakdown: list[DailyBreakdownEntry]
    top_events: list[EventPerformance]
    customer_metrics: WeeklyCustomerMetrics
    top_packages: list[PackagePerformance]
    trends: TrendSummary
    recommendations: list[str] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)
    overview_source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


# ---------------------------------------------------------------------------
# Report generation history
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ReportSummary:
    title: str
    description: str
    highlights: list[str]
    recommendations: list[str]
    alerts: list[str]


@dataclass(slots=True)
class ReportGenerationRecord:
    """Append-only record of one completed report build."""

    report_type: ReportType
    generated_at: datetime
    data_period_start: datetime
    data_period_end: datetime
    output_format: ReportFormat
    records_processed: int
    sections_generated: int
    report_summary: ReportSummary
    key_metrics: dict[str, Any]
    template_id: str | None = None
    generation_time_ms: int | None = None
    file_path: str | None = None
    file_url: str | None = None
    is_successful: bool = True
    id: str | None = None


@dataclass(slots=True)
class GenerationResult:
    report_id: str | None
    report_data: DailySummaryReportData | WeeklySummaryReportData | None
    file_path: str | None = None
    file_url: str | None = None
    skipped: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.skipped:
            return {"skipped": True, "reason": self.reason}
        return {
            "report_id": self.report_id,
            "file_path": self.file_path,
            "file_url": self.file_url,
            "records_processed": _records_processed(self.report_data),
            "report_data": self.report_data.to_dict() if self.report_data else None,
        }


def _records_processed(report_data) -> int:
    if report_data is None:
        return 0
    return report_data.overview.total_bookings


def to_jsonable(value: Any) -> Any:
    """Convert dataclass dumps into JSON-safe primitives."""
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value
