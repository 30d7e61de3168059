"""
Composition root for the reporting feature.

Builds every repository and service once from settings and the shared
Redis client. The API lifespan and the worker entrypoint each own one
container and drive its initialize/shutdown.
"""

from dataclasses import dataclass

from app.config import Settings, settings as default_settings
from app.features.reporting.jobs.cleanup_job import ReportingCleanupJob
from app.features.reporting.jobs.handlers import JobHandlerRegistry
from app.features.reporting.jobs.locks import ReportLockManager
from app.features.reporting.jobs.queue import RedisJobQueue
from app.features.reporting.pipeline.aggregation.service import AggregationService
from app.features.reporting.pipeline.generators.daily_summary import DailySummaryGenerator
from app.features.reporting.pipeline.generators.rendering import ReportFileRenderer
from app.features.reporting.pipeline.generators.weekly_summary import WeeklySummaryGenerator
from app.features.reporting.repository.metrics_repository import MetricsRepository
from app.features.reporting.repository.monitoring_repository import (
    AlertRepository,
    ExecutionRepository,
    ScheduledJobRepository,
)
from app.features.reporting.repository.report_repository import (
    DeliveryRepository,
    RecipientRepository,
    ReportHistoryRepository,
    SubscriptionRepository,
)
from app.features.reporting.services.distribution_service import EmailDistributor
from app.features.reporting.services.monitoring_service import JobMonitor
from app.features.reporting.services.recipient_service import RecipientManager
from app.features.reporting.services.scheduler import JobScheduler
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ReportingContainer:
    scheduler: JobScheduler
    monitor: JobMonitor
    distributor: EmailDistributor
    recipients: RecipientManager
    daily_generator: DailySummaryGenerator
    weekly_generator: WeeklySummaryGenerator
    aggregation: AggregationService
    cleanup: ReportingCleanupJob
    run_workers: bool = False

    async def initialize(self, *, register_defaults: bool = False) -> None:
        await self.scheduler.initialize()
        if register_defaults:
            await self.scheduler.register_default_jobs()
        if self.run_workers:
            self.scheduler.start_workers()
        logger.info(
            "Reporting services initialized",
            run_workers=self.run_workers,
            register_defaults=register_defaults,
        )

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()


def build_reporting_container(
    redis_client,
    config: Settings | None = None,
    *,
    metrics: MetricsRepository | None = None,
    history: ReportHistoryRepository | None = None,
    recipients: RecipientRepository | None = None,
    subscriptions: SubscriptionRepository | None = None,
    deliveries: DeliveryRepository | None = None,
    executions: ExecutionRepository | None = None,
    alerts: AlertRepository | None = None,
    scheduled_jobs: ScheduledJobRepository | None = None,
    distributor: EmailDistributor | None = None,
    run_workers: bool | None = None,
) -> ReportingContainer:
    """Wire the reporting feature. Repository and distributor arguments allow substituting fakes."""
    config = config or default_settings

    metrics = metrics or MetricsRepository()
    history = history or ReportHistoryRepository()
    scheduled_jobs = scheduled_jobs or ScheduledJobRepository()

    recipients = recipients or RecipientRepository()
    distributor = distributor or EmailDistributor(
        recipients,
        deliveries or DeliveryRepository(),
        api_key=config.RESEND_API_KEY,
        api_url=config.RESEND_API_URL,
        from_email=config.REPORT_FROM_EMAIL,
        from_name=config.REPORT_FROM_NAME,
    )
    monitor = JobMonitor(
        executions or ExecutionRepository(),
        alerts or AlertRepository(),
        scheduled_jobs,
        distributor,
    )

    renderer = ReportFileRenderer(config.APP_PUBLIC_URL)
    locks = ReportLockManager(redis_client, ttl_s=config.REPORT_LOCK_TTL_S)
    generator_options = {"timezone": config.VENUE_TIMEZONE, "table_count": config.VENUE_TABLE_COUNT}
    daily = DailySummaryGenerator(metrics, history, renderer, distributor, locks, **generator_options)
    weekly = WeeklySummaryGenerator(metrics, history, renderer, distributor, locks, **generator_options)
    aggregation = AggregationService(
        metrics, cache_ttl_hours=config.METRICS_CACHE_TTL_HOURS, **generator_options
    )
    cleanup = ReportingCleanupJob(history, metrics, monitor)
    recipient_manager = RecipientManager(
        recipients,
        subscriptions or SubscriptionRepository(),
        distributor,
        public_url=config.APP_PUBLIC_URL,
        default_timezone=config.VENUE_TIMEZONE,
    )

    handlers = JobHandlerRegistry(
        daily,
        weekly,
        aggregation,
        cleanup,
        timezone=config.VENUE_TIMEZONE,
        default_retention_days=config.REPORT_RETENTION_DAYS,
    )

    queue_config = config.get_queue_config()
    queue = RedisJobQueue(
        redis_client,
        queue_config["name"],
        default_attempts=queue_config["attempts"],
        backoff_delay_ms=queue_config["backoff_delay_ms"],
        remove_on_complete=queue_config["remove_on_complete"],
        remove_on_fail=queue_config["remove_on_fail"],
        stall_timeout_ms=queue_config["stall_timeout_ms"],
        stall_grace_ms=queue_config["stall_grace_ms"],
    )
    scheduler = JobScheduler(
        redis_client,
        queue,
        handlers,
        monitor,
        scheduled_jobs,
        concurrency=queue_config["concurrency"],
        poll_interval_s=queue_config["poll_interval_s"],
        default_timezone=config.VENUE_TIMEZONE,
        default_attempts=queue_config["attempts"],
        shutdown_grace_s=queue_config["shutdown_grace_s"],
        stall_check_interval_s=queue_config["stall_check_interval_s"],
    )

    return ReportingContainer(
        scheduler=scheduler,
        monitor=monitor,
        distributor=distributor,
        recipients=recipient_manager,
        daily_generator=daily,
        weekly_generator=weekly,
        aggregation=aggregation,
        cleanup=cleanup,
        run_workers=config.REPORTING_WORKERS_IN_API if run_workers is None else run_workers,
    )
