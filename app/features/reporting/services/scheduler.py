"""
Job scheduler.

Owns the reporting queue, the worker pool and the public scheduling API.
Workers claim jobs from Redis, dispatch them through the handler registry
under a timeout, and report every attempt to the JobMonitor. Retries are
decided by the queue from the failure kind.
"""

import asyncio
import time
import traceback
import uuid
from datetime import UTC, datetime
from typing import Any

from app.features.reporting.domain.errors import (
    FailureKind,
    InfrastructureError,
    JobExecutionFailed,
    JobFailure,
    JobValidationError,
    classify_exception,
)
from app.features.reporting.domain.models import (
    JobExecutionRecord,
    JobPriority,
    JobStatus,
    JobType,
    QueuedJob,
    ScheduledJob,
)
from app.features.reporting.jobs.defaults import DEFAULT_JOBS
from app.features.reporting.jobs.handlers import JobHandlerRegistry
from app.features.reporting.jobs.queue import (
    STALLED_REASON,
    RedisJobQueue,
    repeat_job_id,
    validate_schedule,
)
from app.features.reporting.repository.monitoring_repository import ScheduledJobRepository
from app.features.reporting.services.monitoring_service import JobMonitor, ResourceSampler
from app.infrastructure.observability.logging import get_logger, log_job_event

logger = get_logger(__name__)

STATUS_BY_STATE: dict[str, JobStatus] = {
    "waiting": JobStatus.PENDING,
    "delayed": JobStatus.PENDING,
    "active": JobStatus.RUNNING,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "paused": JobStatus.CANCELLED,
}

INTERRUPTED_REASON = "Worker shut down before the job finished"


def execution_id(job: QueuedJob, attempt: int) -> str:
    """
    One id per claimed run. A job re-queued after an interrupted run keeps its
    attempt number, so the claim time tells the two runs apart.
    """
    if job.processed_at is None:
        return f"{job.id}:{attempt}"
    return f"{job.id}:{attempt}:{int(job.processed_at.timestamp() * 1000)}"


def job_to_dict(job: QueuedJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "scheduled_job_id": job.scheduled_job_id,
        "name": job.name,
        "job_type": job.job_type.value,
        "state": job.state,
        "status": STATUS_BY_STATE[job.state].value if job.state in STATUS_BY_STATE else None,
        "attempts_made": job.attempts_made,
        "max_attempts": job.max_attempts,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "run_at": job.run_at.isoformat() if job.run_at else None,
        "processed_at": job.processed_at.isoformat() if job.processed_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        "failed_reason": job.failed_reason,
    }


class JobScheduler:
    def __init__(
        self,
        redis_client,
        queue: RedisJobQueue,
        handlers: JobHandlerRegistry,
        monitor: JobMonitor,
        scheduled_jobs: ScheduledJobRepository,
        *,
        concurrency: int = 3,
        poll_interval_s: float = 1.0,
        default_timezone: str = "Europe/London",
        default_attempts: int = 3,
        shutdown_grace_s: float = 30.0,
        stall_check_interval_s: float = 30.0,
    ):
        self.redis = redis_client
        self.queue = queue
        self.handlers = handlers
        self.monitor = monitor
        self.scheduled_jobs = scheduled_jobs
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.default_timezone = default_timezone
        self.default_attempts = default_attempts
        self.shutdown_grace_s = shutdown_grace_s
        self.stall_check_interval_s = stall_check_interval_s

        self._initialized = False
        self._workers: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._last_stall_check = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Verify the queue backend. Raises InfrastructureError if unreachable."""
        if self._initialized:
            return

        if not await self.redis.ping():
            raise InfrastructureError("Queue backend is unreachable", details={"queue": self.queue.name})

        try:
            recovered = await self.recover_stalled_jobs()
            counts = await self.queue.counts()
        except Exception as e:
            raise InfrastructureError(f"Queue introspection failed: {e}") from e

        self._initialized = True
        logger.info(
            "Job scheduler initialized", queue=self.queue.name, counts=counts, recovered=recovered
        )

    def start_workers(self) -> None:
        if self._workers:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"reporting-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Worker pool started", queue=self.queue.name, concurrency=self.concurrency)

    @property
    def workers_alive(self) -> bool:
        return bool(self._workers) and any(not task.done() for task in self._workers)

    async def run_forever(self) -> None:
        """Run the worker pool until cancelled."""
        self.start_workers()
        try:
            # asyncio.wait leaves the workers running when this task is cancelled,
            # so shutdown() still gets to drain them
            await asyncio.wait(self._workers)
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """
        Stop claiming, give in-flight jobs shutdown_grace_s to finish, then
        cancel what is left. Cancelled jobs are put back in waiting.
        """
        self._stopping.set()
        workers, self._workers = self._workers, []
        if workers:
            _done, pending = await asyncio.wait(workers, timeout=self.shutdown_grace_s)
            for task in pending:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            if pending:
                logger.warning(
                    "Workers cancelled after shutdown grace period",
                    queue=self.queue.name,
                    cancelled=len(pending),
                    grace_s=self.shutdown_grace_s,
                )
        self._initialized = False
        logger.info("Job scheduler shut down", queue=self.queue.name)

    async def recover_stalled_jobs(self, at_ms: int | None = None) -> int:
        """Settle jobs whose worker vanished and fail their orphaned execution rows."""
        stalled = await self.queue.recover_stalled(at_ms)
        for item in stalled:
            job = item.job
            started_at = job.processed_at or datetime.now(UTC)
            record = JobExecutionRecord(
                job_id=job.scheduled_job_id,
                execution_id=execution_id(job, item.attempt_number),
                status=JobStatus.RUNNING,
                attempt_number=item.attempt_number,
                started_at=started_at,
                metadata=self._execution_metadata(job),
            )
            await self.monitor.fail_execution(
                record,
                STALLED_REASON,
                int((datetime.now(UTC) - started_at).total_seconds() * 1000),
                metadata={
                    "failure_kind": FailureKind.TRANSIENT.value,
                    "will_retry": item.requeued,
                    "stalled": True,
                },
            )
            log_job_event(
                record.job_id,
                job.job_type.value,
                JobStatus.FAILED.value,
                error=STALLED_REASON,
                attempt=item.attempt_number,
                will_retry=item.requeued,
            )
        return len(stalled)

    async def _maybe_recover_stalled(self) -> None:
        now = time.monotonic()
        if now - self._last_stall_check < self.stall_check_interval_s:
            return
        self._last_stall_check = now
        try:
            await self.recover_stalled_jobs()
        except Exception as e:
            logger.error("Stalled job sweep failed", queue=self.queue.name, error=str(e))

    # ------------------------------------------------------------------
    # Scheduling API
    # ------------------------------------------------------------------

    async def schedule_recurring_job(
        self,
        name: str,
        job_type: JobType,
        payload: dict[str, Any] | None,
        cron_expression: str,
        *,
        timezone: str | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        max_attempts: int | None = None,
        timeout_ms: int | None = None,
        description: str | None = None,
    ) -> str:
        """Register a recurring job. Re-registering the same schedule returns the same id."""
        timezone = timezone or self.default_timezone
        validate_schedule(cron_expression, timezone)

        definition = ScheduledJob(
            id=repeat_job_id(name, cron_expression, timezone),
            name=name,
            job_type=job_type,
            payload=payload or {},
            priority=priority,
            timezone=timezone,
            max_attempts=self._attempt_cap(max_attempts),
            timeout_ms=timeout_ms,
            cron_expression=cron_expression,
            description=description,
        )
        job_id = await self.queue.add_repeatable(definition, priority.value_rank)
        await self._persist_definition(definition)

        logger.info(
            "Recurring job scheduled",
            job_id=job_id,
            job_type=job_type.value,
            cron=cron_expression,
            timezone=timezone,
        )
        return job_id

    async def schedule_one_time_job(
        self,
        name: str,
        job_type: JobType,
        payload: dict[str, Any] | None,
        delay_ms: int = 0,
        *,
        priority: JobPriority = JobPriority.NORMAL,
        max_attempts: int | None = None,
        timeout_ms: int | None = None,
        description: str | None = None,
    ) -> str:
        if delay_ms is None or delay_ms < 0:
            raise JobValidationError("delay_ms must be >= 0", details={"delay_ms": delay_ms})

        job = QueuedJob(
            id=f"{name}:{uuid.uuid4().hex}",
            name=name,
            job_type=job_type,
            payload=payload or {},
            priority=priority.value_rank,
            max_attempts=self._attempt_cap(max_attempts),
            timeout_ms=timeout_ms,
        )
        await self.queue.add(job, delay_ms)
        await self._persist_definition(
            ScheduledJob(
                id=job.id,
                name=name,
                job_type=job_type,
                payload=job.payload,
                priority=priority,
                timezone=self.default_timezone,
                max_attempts=job.max_attempts,
                timeout_ms=timeout_ms,
                delay_ms=delay_ms,
                description=description,
            )
        )

        logger.info("One-time job scheduled", job_id=job.id, job_type=job_type.value, delay_ms=delay_ms)
        return job.id

    def _attempt_cap(self, max_attempts: int | None) -> int:
        if max_attempts is None:
            return self.default_attempts
        if max_attempts < 1:
            raise JobValidationError(
                "max_attempts must be >= 1", details={"max_attempts": max_attempts}
            )
        return max_attempts

    async def _persist_definition(self, definition: ScheduledJob) -> None:
        try:
            await self.scheduled_jobs.upsert(definition)
        except Exception as e:
            logger.warning("Failed to persist scheduled job", job_id=definition.id, error=str(e))

    async def register_default_jobs(self) -> list[str]:
        job_ids = []
        for default in DEFAULT_JOBS:
            job_ids.append(
                await self.schedule_recurring_job(
                    default.name,
                    default.job_type,
                    dict(default.payload),
                    default.cron_expression,
                    priority=default.priority,
                    max_attempts=default.max_attempts,
                    timeout_ms=default.timeout_ms,
                    description=default.description,
                )
            )
        logger.info("Default jobs registered", count=len(job_ids))
        return job_ids

    async def pause_job(self, job_id: str) -> bool:
        paused = await self.queue.pause(job_id)
        if paused:
            await self._set_enabled(job_id, False)
            logger.info("Job paused", job_id=job_id)
        return paused

    async def resume_job(self, job_id: str) -> bool:
        resumed = await self.queue.resume(job_id)
        if resumed:
            await self._set_enabled(job_id, True)
            logger.info("Job resumed", job_id=job_id)
        return resumed

    async def remove_job(self, job_id: str) -> bool:
        """Remove a job. Removing an unknown or already removed id is a no-op."""
        removed = await self.queue.remove(job_id)
        if removed:
            try:
                await self.scheduled_jobs.delete(job_id)
            except Exception as e:
                logger.warning("Failed to delete scheduled job row", job_id=job_id, error=str(e))
            logger.info("Job removed", job_id=job_id)
        return removed

    async def _set_enabled(self, job_id: str, enabled: bool) -> None:
        try:
            await self.scheduled_jobs.set_enabled(job_id, enabled)
        except Exception as e:
            logger.warning("Failed to update scheduled job", job_id=job_id, error=str(e))

    async def get_job_status(self, job_id: str) -> JobStatus | None:
        state = await self.queue.get_state(job_id)
        if state is None:
            return None
        return STATUS_BY_STATE.get(state)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_queue_stats(self) -> dict[str, int]:
        counts = await self.queue.counts()
        return {**counts, "total": sum(counts.values())}

    async def get_job_history(self, limit: int = 50) -> list[dict[str, Any]]:
        finished = await self.queue.list_jobs("completed", limit) + await self.queue.list_jobs(
            "failed", limit
        )
        finished.sort(
            key=lambda job: job.finished_at or datetime.min.replace(tzinfo=UTC), reverse=True
        )
        return [job_to_dict(job) for job in finished[:limit]]

    async def get_active_jobs(self) -> list[dict[str, Any]]:
        return [job_to_dict(job) for job in await self.queue.list_jobs("active")]

    async def get_waiting_jobs(self) -> list[dict[str, Any]]:
        waiting = await self.queue.list_jobs("waiting") + await self.queue.list_jobs("delayed")
        return [job_to_dict(job) for job in waiting]

    async def health_check(self, *, expect_workers: bool = True) -> dict[str, Any]:
        checks: dict[str, dict[str, Any]] = {}

        t0 = time.time()
        try:
            redis_ok = await self.redis.ping()
            checks["redis"] = {"ok": bool(redis_ok), "latency_ms": round((time.time() - t0) * 1000, 1)}
        except Exception as e:
            checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}

        if expect_workers:
            alive = self.workers_alive
            checks["worker"] = {"ok": alive, "concurrency": self.concurrency}
            if not alive:
                checks["worker"]["error"] = "Worker pool is not running"
        else:
            checks["worker"] = {"ok": True, "mode": "external"}

        try:
            checks["queue"] = {"ok": True, "counts": await self.get_queue_stats()}
        except Exception as e:
            checks["queue"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}

        healthy = all(check["ok"] for check in checks.values())
        return {
            "status": "healthy" if healthy else "unhealthy",
            "queue": self.queue.name,
            "checks": checks,
        }

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _worker_loop(self, index: int) -> None:
        logger.info("Worker started", worker=index, queue=self.queue.name)
        while not self._stopping.is_set():
            await self._maybe_recover_stalled()
            try:
                # A claim cut short by cancellation still lands in active,
                # where the stall sweep picks it up once its lease expires
                job = await asyncio.shield(self.queue.claim())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Failed to claim job", worker=index, error=str(e))
                await self._idle()
                continue

            if job is None:
                await self._idle()
                continue

            try:
                await self.process_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Unhandled error processing job", worker=index, job_id=job.id, error=str(e))

    async def _idle(self) -> None:
        """Sleep one poll interval, waking early when shutdown starts."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_s)
        except asyncio.TimeoutError:
            pass

    async def execute(self, job: QueuedJob) -> dict[str, Any]:
        """
        Dispatch one attempt under the job's timeout.

        Returns {success, result, execution_time_ms, processed_at}; raises
        JobExecutionFailed carrying a JobFailure otherwise.
        """
        started = time.perf_counter()
        timeout_s = job.timeout_ms / 1000 if job.timeout_ms else None

        try:
            result = await asyncio.wait_for(self.handlers.dispatch(job), timeout=timeout_s)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            raise JobExecutionFailed(
                JobFailure(
                    kind=FailureKind.TRANSIENT,
                    error=f"Job exceeded timeout of {job.timeout_ms}ms",
                    execution_time_ms=int((time.perf_counter() - started) * 1000),
                    failed_at=datetime.now(UTC),
                )
            ) from e
        except Exception as e:
            raise JobExecutionFailed(
                JobFailure(
                    kind=classify_exception(e),
                    error=str(e) or type(e).__name__,
                    execution_time_ms=int((time.perf_counter() - started) * 1000),
                    failed_at=datetime.now(UTC),
                    details=getattr(e, "details", {}) or {},
                )
            ) from e

        return {
            "success": True,
            "result": result,
            "execution_time_ms": int((time.perf_counter() - started) * 1000),
            "processed_at": datetime.now(UTC).isoformat(),
        }

    async def process_job(self, job: QueuedJob) -> dict[str, Any]:
        """Run one claimed attempt and settle it on the queue and in the monitor."""
        attempt = job.attempts_made + 1
        job_id = job.scheduled_job_id
        record = JobExecutionRecord(
            job_id=job_id,
            execution_id=execution_id(job, attempt),
            status=JobStatus.RUNNING,
            attempt_number=attempt,
            started_at=datetime.now(UTC),
            metadata=self._execution_metadata(job),
        )
        await self.monitor.record_job_execution(record)
        log_job_event(job_id, job.job_type.value, JobStatus.RUNNING.value, attempt=attempt)

        sampler = ResourceSampler()
        try:
            outcome = await self.execute(job)
        except asyncio.CancelledError:
            await self._release_interrupted(job, record)
            raise
        except JobExecutionFailed as failed:
            failure = failed.failure
            will_retry = await self.queue.fail(job, failure.error, retryable=failure.retryable)
            cause = failed.__cause__
            await self.monitor.fail_execution(
                record,
                failure.error,
                failure.execution_time_ms,
                error_stack="".join(traceback.format_exception(cause)) if cause else None,
                usage=sampler.finish(),
                metadata={"failure_kind": failure.kind.value, "will_retry": will_retry},
            )
            log_job_event(
                job_id,
                job.job_type.value,
                JobStatus.FAILED.value,
                failure.execution_time_ms,
                error=failure.error,
                attempt=attempt,
                failure_kind=failure.kind.value,
                will_retry=will_retry,
            )
            return failure.to_dict()

        await self.queue.complete(job, outcome)
        await self.monitor.complete_execution(
            record, outcome, outcome["execution_time_ms"], sampler.finish()
        )
        log_job_event(
            job_id,
            job.job_type.value,
            JobStatus.COMPLETED.value,
            outcome["execution_time_ms"],
            attempt=attempt,
        )
        return outcome

    @staticmethod
    def _execution_metadata(job: QueuedJob) -> dict[str, Any]:
        return {"queue_job_id": job.id, "job_name": job.name, "job_type": job.job_type.value}

    async def _release_interrupted(self, job: QueuedJob, record: JobExecutionRecord) -> None:
        """Hand a job cancelled mid-run back to the queue and close its execution row."""
        requeued = False
        try:
            requeued = await self.queue.requeue(job)
        except Exception as e:
            logger.error("Failed to re-queue interrupted job", job_id=job.id, error=str(e))

        await self.monitor.update_job_execution(
            record.execution_id,
            {
                "status": JobStatus.CANCELLED,
                "completed_at": datetime.now(UTC),
                "error_message": INTERRUPTED_REASON,
                "metadata": {**record.metadata, "requeued": requeued},
            },
        )
        log_job_event(
            record.job_id,
            job.job_type.value,
            JobStatus.CANCELLED.value,
            attempt=record.attempt_number,
            requeued=requeued,
        )
