"""
Durable job queue on Redis sorted sets.

Layout for a queue named ``reports``:

    queue:reports:jobs       hash  job id -> job JSON
    queue:reports:repeat     hash  repeat id -> recurring definition JSON
    queue:reports:waiting    zset  score = priority * 1e13 + enqueue ms
    queue:reports:delayed    zset  score = run-at ms
    queue:reports:active     zset  score = lease expiry ms
    queue:reports:completed  zset  score = finish ms
    queue:reports:failed     zset  score = finish ms
    queue:reports:paused     zset  score = pause ms

Claiming uses ZPOPMIN on ``waiting`` so two workers never get the same
attempt. Promotion from ``delayed`` only moves a job when ZREM reports that
this caller removed it. Recurring jobs keep exactly one pending instance;
the next instance is created when the current one is claimed, at the first
matching time after both the previous firing and now, so missed firings are
not replayed.

An active job holds a lease of its timeout plus a grace margin. A job whose
lease expires without complete/fail (worker crash, lost process) is picked up
by ``recover_stalled`` and counted as a failed attempt. A job interrupted by
a worker shutdown goes back to waiting through ``requeue`` without spending
an attempt.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from app.features.reporting.domain.errors import JobValidationError
from app.features.reporting.domain.models import JobType, QueuedJob, ScheduledJob
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PRIORITY_SCORE_FACTOR = 10_000_000_000_000

STATES = ("waiting", "delayed", "active", "completed", "failed", "paused")

STALLED_REASON = "Job stalled: lease expired before the worker finished"


def now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def _ms_to_dt(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def _dt_to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _iso_to_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def encode_job(job: QueuedJob) -> str:
    return json.dumps(
        {
            "id": job.id,
            "name": job.name,
            "job_type": job.job_type.value,
            "payload": job.payload,
            "priority": job.priority,
            "max_attempts": job.max_attempts,
            "attempts_made": job.attempts_made,
            "timeout_ms": job.timeout_ms,
            "repeat_id": job.repeat_id,
            "state": job.state,
            "created_at": _dt_to_iso(job.created_at),
            "run_at": _dt_to_iso(job.run_at),
            "processed_at": _dt_to_iso(job.processed_at),
            "finished_at": _dt_to_iso(job.finished_at),
            "failed_reason": job.failed_reason,
            "return_value": job.return_value,
            "paused_from": job.paused_from,
        },
        default=str,
    )


def decode_job(raw: str) -> QueuedJob:
    data = json.loads(raw)
    return QueuedJob(
        id=data["id"],
        name=data["name"],
        job_type=JobType(data["job_type"]),
        payload=data.get("payload") or {},
        priority=int(data["priority"]),
        max_attempts=int(data["max_attempts"]),
        attempts_made=int(data.get("attempts_made") or 0),
        timeout_ms=data.get("timeout_ms"),
        repeat_id=data.get("repeat_id"),
        state=data.get("state", "waiting"),
        created_at=_iso_to_dt(data.get("created_at")),
        run_at=_iso_to_dt(data.get("run_at")),
        processed_at=_iso_to_dt(data.get("processed_at")),
        finished_at=_iso_to_dt(data.get("finished_at")),
        failed_reason=data.get("failed_reason"),
        return_value=data.get("return_value"),
        paused_from=data.get("paused_from"),
    )


def repeat_job_id(name: str, cron_expression: str, timezone: str) -> str:
    """Stable id for a recurring job, so re-registration is a no-op."""
    digest = hashlib.sha1(f"{cron_expression}|{timezone}".encode()).hexdigest()[:12]
    return f"repeat:{name}:{digest}"


def validate_schedule(cron_expression: str, timezone: str) -> ZoneInfo:
    try:
        tz = ZoneInfo(timezone)
    except (KeyError, ValueError) as e:
        raise JobValidationError(f"Unknown timezone: {timezone}") from e

    if not croniter.is_valid(cron_expression):
        raise JobValidationError(f"Invalid cron expression: {cron_expression}")
    return tz


def next_fire_time(cron_expression: str, timezone: str, after: datetime) -> datetime:
    """Next matching time strictly after ``after``, returned in UTC."""
    tz = validate_schedule(cron_expression, timezone)
    cron = croniter(cron_expression, after.astimezone(tz))
    next_run = cron.get_next(datetime)
    return next_run.astimezone(UTC)


@dataclass
class StalledJob:
    """An active job recovered after its lease expired."""

    job: QueuedJob
    attempt_number: int
    requeued: bool


class RedisJobQueue:
    """Queue operations for one named queue."""

    def __init__(
        self,
        redis_client,
        name: str,
        *,
        default_attempts: int = 3,
        backoff_delay_ms: int = 5000,
        remove_on_complete: int = 50,
        remove_on_fail: int = 20,
        stall_timeout_ms: int = 1_800_000,
        stall_grace_ms: int = 60_000,
    ):
        self.redis = redis_client
        self.name = name
        self.default_attempts = default_attempts
        self.backoff_delay_ms = backoff_delay_ms
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        # Lease for jobs without their own timeout
        self.stall_timeout_ms = stall_timeout_ms
        self.stall_grace_ms = stall_grace_ms
        self.prefix = f"queue:{name}"

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @property
    def jobs_key(self) -> str:
        return f"{self.prefix}:jobs"

    @property
    def repeat_key(self) -> str:
        return f"{self.prefix}:repeat"

    def state_key(self, state: str) -> str:
        return f"{self.prefix}:{state}"

    # ------------------------------------------------------------------
    # Job storage
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> QueuedJob | None:
        raw = await self.redis.hash_get(self.jobs_key, job_id)
        return decode_job(raw) if raw else None

    async def _save(self, job: QueuedJob) -> None:
        await self.redis.hash_set(self.jobs_key, job.id, encode_job(job))

    async def _place(self, job: QueuedJob, state: str, score: float) -> None:
        job.state = state
        await self._save(job)
        await self.redis.zset_add(self.state_key(state), job.id, score)

    def _waiting_score(self, priority: int, at_ms: int) -> float:
        return priority * PRIORITY_SCORE_FACTOR + at_ms

    def lease_ms(self, job: QueuedJob) -> int:
        return (job.timeout_ms or self.stall_timeout_ms) + self.stall_grace_ms

    # ------------------------------------------------------------------
    # Adding jobs
    # ------------------------------------------------------------------

    async def add(self, job: QueuedJob, delay_ms: int = 0) -> QueuedJob:
        if delay_ms < 0:
            raise JobValidationError("delay_ms must be >= 0")

        created = now_ms()
        job.created_at = job.created_at or _ms_to_dt(created)
        if delay_ms > 0:
            run_at = created + delay_ms
            job.run_at = _ms_to_dt(run_at)
            await self._place(job, "delayed", run_at)
        else:
            job.run_at = job.created_at
            await self._place(job, "waiting", self._waiting_score(job.priority, created))

        logger.debug("Job added to queue", queue=self.name, job_id=job.id, state=job.state)
        return job

    async def add_repeatable(self, definition: ScheduledJob, priority: int) -> str:
        """Store a recurring definition and make sure its next firing is queued."""
        repeat_id = definition.id
        existing = await self._get_repeat(repeat_id)
        paused = bool(existing and existing.get("paused"))

        record = {
            "id": repeat_id,
            "name": definition.name,
            "job_type": definition.job_type.value,
            "payload": definition.payload,
            "cron_expression": definition.cron_expression,
            "timezone": definition.timezone,
            "priority": priority,
            "max_attempts": definition.max_attempts,
            "timeout_ms": definition.timeout_ms,
            "description": definition.description,
            "paused": paused,
            "current_instance": existing.get("current_instance") if existing else None,
        }
        await self._save_repeat(record)

        if not paused:
            current = await self._current_instance(record)
            if current is None or current.state in ("completed", "failed"):
                await self._schedule_next_instance(record, after=datetime.now(UTC))

        return repeat_id

    async def _get_repeat(self, repeat_id: str) -> dict[str, Any] | None:
        raw = await self.redis.hash_get(self.repeat_key, repeat_id)
        return json.loads(raw) if raw else None

    async def _save_repeat(self, record: dict[str, Any]) -> None:
        await self.redis.hash_set(self.repeat_key, record["id"], json.dumps(record, default=str))

    async def _current_instance(self, record: dict[str, Any]) -> QueuedJob | None:
        instance_id = record.get("current_instance")
        if not instance_id:
            return None
        return await self.get_job(instance_id)

    async def _schedule_next_instance(self, record: dict[str, Any], after: datetime) -> QueuedJob | None:
        fire_at = next_fire_time(record["cron_expression"], record["timezone"], after)
        fire_ms = int(fire_at.timestamp() * 1000)
        instance = QueuedJob(
            id=f"{record['id']}:{fire_ms}",
            name=record["name"],
            job_type=JobType(record["job_type"]),
            payload=dict(record.get("payload") or {}),
            priority=int(record["priority"]),
            max_attempts=int(record["max_attempts"]),
            timeout_ms=record.get("timeout_ms"),
            repeat_id=record["id"],
            state="delayed",
            created_at=datetime.now(UTC),
            run_at=fire_at,
        )

        created = await self.redis.hash_set_if_absent(
            self.jobs_key, instance.id, encode_job(instance)
        )
        if created:
            await self.redis.zset_add(self.state_key("delayed"), instance.id, fire_ms)
            logger.debug(
                "Recurring job instance scheduled",
                queue=self.name,
                repeat_id=record["id"],
                fire_at=fire_at.isoformat(),
            )

        record["current_instance"] = instance.id
        await self._save_repeat(record)
        return instance

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def promote_due(self, at_ms: int | None = None) -> int:
        """Move delayed jobs whose run time has passed into waiting."""
        at_ms = at_ms if at_ms is not None else now_ms()
        due = await self.redis.zset_range_by_score(self.state_key("delayed"), 0, at_ms, limit=100)
        promoted = 0
        for job_id in due:
            if await self.redis.zset_remove(self.state_key("delayed"), job_id) != 1:
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue
            await self._place(job, "waiting", self._waiting_score(job.priority, at_ms))
            promoted += 1
        return promoted

    async def claim(self) -> QueuedJob | None:
        """Atomically take the next waiting job and mark it active."""
        await self.promote_due()

        popped = await self.redis.zset_pop_min(self.state_key("waiting"))
        if popped is None:
            return None

        job_id, _score = popped
        job = await self.get_job(job_id)
        if job is None:
            logger.warning("Claimed job has no data, dropping", queue=self.name, job_id=job_id)
            return None

        job.processed_at = datetime.now(UTC)
        await self._place(job, "active", now_ms() + self.lease_ms(job))

        if job.repeat_id and job.attempts_made == 0:
            record = await self._get_repeat(job.repeat_id)
            if record and not record.get("paused") and record.get("current_instance") == job.id:
                now = datetime.now(UTC)
                after = max(job.run_at, now) if job.run_at else now
                await self._schedule_next_instance(record, after=after)

        return job

    async def _exists(self, job_id: str) -> bool:
        return await self.redis.hash_get(self.jobs_key, job_id) is not None

    async def _release_active(self, job: QueuedJob) -> bool:
        """Drop the job from active. False when this worker no longer holds it."""
        if not await self._exists(job.id):
            await self.redis.zset_remove(self.state_key("active"), job.id)
            logger.info("Job was removed while running", queue=self.name, job_id=job.id)
            return False
        if await self.redis.zset_remove(self.state_key("active"), job.id) != 1:
            logger.warning(
                "Job no longer held by this worker, outcome dropped",
                queue=self.name,
                job_id=job.id,
            )
            return False
        return True

    async def complete(self, job: QueuedJob, return_value: dict[str, Any]) -> None:
        if not await self._release_active(job):
            return
        job.finished_at = datetime.now(UTC)
        job.return_value = return_value
        job.failed_reason = None
        await self._place(job, "completed", now_ms())
        await self._trim("completed", self.remove_on_complete)

    async def fail(self, job: QueuedJob, error: str, *, retryable: bool = True) -> bool:
        """
        Record a failed attempt.

        Returns True when the job was re-queued for another attempt with
        exponential backoff, False when the failure is terminal.
        """
        if not await self._release_active(job):
            return False
        job.attempts_made += 1
        job.failed_reason = error

        if retryable and job.attempts_made < job.max_attempts:
            delay = self.backoff_delay_ms * (2 ** (job.attempts_made - 1))
            run_at = now_ms() + delay
            job.run_at = _ms_to_dt(run_at)
            await self._place(job, "delayed", run_at)
            logger.info(
                "Job scheduled for retry",
                queue=self.name,
                job_id=job.id,
                attempt=job.attempts_made,
                delay_ms=delay,
            )
            return True

        job.finished_at = datetime.now(UTC)
        await self._place(job, "failed", now_ms())
        await self._trim("failed", self.remove_on_fail)
        return False

    async def requeue(self, job: QueuedJob) -> bool:
        """Put an interrupted active job back in waiting without spending an attempt."""
        if not await self._release_active(job):
            return False
        await self._place(job, "waiting", self._waiting_score(job.priority, now_ms()))
        logger.info("Interrupted job re-queued", queue=self.name, job_id=job.id)
        return True

    async def recover_stalled(self, at_ms: int | None = None) -> list[StalledJob]:
        """
        Settle active jobs whose lease has expired.

        Each one counts as a failed attempt: it goes back to waiting while
        attempts remain and to failed otherwise. Safe to run from several
        processes; only the caller whose ZREM succeeds settles a job.
        """
        at_ms = at_ms if at_ms is not None else now_ms()
        expired = await self.redis.zset_range_by_score(self.state_key("active"), 0, at_ms, limit=100)
        recovered = []
        for job_id in expired:
            if await self.redis.zset_remove(self.state_key("active"), job_id) != 1:
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue

            attempt = job.attempts_made + 1
            job.attempts_made = attempt
            job.failed_reason = STALLED_REASON
            if job.attempts_made < job.max_attempts:
                await self._place(job, "waiting", self._waiting_score(job.priority, at_ms))
                requeued = True
            else:
                job.finished_at = datetime.now(UTC)
                await self._place(job, "failed", at_ms)
                await self._trim("failed", self.remove_on_fail)
                requeued = False

            logger.warning(
                "Stalled job recovered",
                queue=self.name,
                job_id=job_id,
                attempt=attempt,
                requeued=requeued,
            )
            recovered.append(StalledJob(job=job, attempt_number=attempt, requeued=requeued))
        return recovered

    async def _trim(self, state: str, keep: int) -> None:
        if keep <= 0:
            return
        # Oldest entries beyond the newest `keep`
        stale = await self.redis.zset_range(self.state_key(state), 0, -(keep + 1))
        if not stale:
            return
        await self.redis.zset_remove(self.state_key(state), *stale)
        await self.redis.hash_delete(self.jobs_key, *stale)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def get_state(self, job_id: str) -> str | None:
        """Raw queue state for a job or recurring definition id, None if unknown."""
        record = await self._get_repeat(job_id)
        if record is not None:
            if record.get("paused"):
                return "paused"
            instance = await self._current_instance(record)
            return instance.state if instance else "delayed"

        job = await self.get_job(job_id)
        return job.state if job else None

    async def pause(self, job_id: str) -> bool:
        record = await self._get_repeat(job_id)
        if record is not None:
            record["paused"] = True
            await self._save_repeat(record)
            instance = await self._current_instance(record)
            if instance is not None:
                await self._pause_job(instance)
            return True

        job = await self.get_job(job_id)
        if job is None:
            return False
        return await self._pause_job(job)

    async def _pause_job(self, job: QueuedJob) -> bool:
        if job.state not in ("waiting", "delayed"):
            logger.warning("Job cannot be paused in its current state", job_id=job.id, state=job.state)
            return False
        await self.redis.zset_remove(self.state_key(job.state), job.id)
        job.paused_from = job.state
        await self._place(job, "paused", now_ms())
        return True

    async def resume(self, job_id: str) -> bool:
        record = await self._get_repeat(job_id)
        if record is not None:
            record["paused"] = False
            await self._save_repeat(record)
            instance = await self._current_instance(record)
            if instance is not None and instance.state == "paused":
                await self._resume_job(instance)
            elif instance is None or instance.state in ("completed", "failed"):
                await self._schedule_next_instance(record, after=datetime.now(UTC))
            return True

        job = await self.get_job(job_id)
        if job is None or job.state != "paused":
            return False
        await self._resume_job(job)
        return True

    async def _resume_job(self, job: QueuedJob) -> None:
        await self.redis.zset_remove(self.state_key("paused"), job.id)
        target = job.paused_from or "waiting"
        job.paused_from = None
        run_at_ms = int(job.run_at.timestamp() * 1000) if job.run_at else now_ms()
        if target == "delayed" and run_at_ms > now_ms():
            await self._place(job, "delayed", run_at_ms)
        else:
            await self._place(job, "waiting", self._waiting_score(job.priority, now_ms()))

    async def remove(self, job_id: str) -> bool:
        """Remove a job or recurring definition. Unknown ids are a no-op."""
        record = await self._get_repeat(job_id)
        if record is not None:
            await self.redis.hash_delete(self.repeat_key, job_id)
            instance = await self._current_instance(record)
            if instance is not None and instance.state != "active":
                await self._remove_job(instance.id)
            return True

        job = await self.get_job(job_id)
        if job is None:
            return False
        await self._remove_job(job_id)
        return True

    async def _remove_job(self, job_id: str) -> None:
        for state in STATES:
            await self.redis.zset_remove(self.state_key(state), job_id)
        await self.redis.hash_delete(self.jobs_key, job_id)

    async def counts(self) -> dict[str, int]:
        return {state: await self.redis.zset_card(self.state_key(state)) for state in STATES}

    async def list_jobs(self, state: str, limit: int = 50) -> list[QueuedJob]:
        """Newest first for finished states, dequeue order otherwise."""
        desc = state in ("completed", "failed")
        ids = await self.redis.zset_range(self.state_key(state), 0, limit - 1, desc=desc)
        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def repeat_definitions(self) -> list[dict[str, Any]]:
        raw = await self.redis.hash_get_all(self.repeat_key)
        return [json.loads(value) for value in raw.values()]
