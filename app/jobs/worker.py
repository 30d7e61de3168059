"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate runner.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.db.pool import db_pool
from app.features.reporting.container import build_reporting_container
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_reporting_worker() -> None:
    """Register default jobs and process the reporting queue until cancelled."""
    await db_pool.initialize()
    await fast_redis.initialize()
    reporting = build_reporting_container(fast_redis, run_workers=False)
    try:
        await reporting.initialize(register_defaults=True)
        await reporting.scheduler.run_forever()
    finally:
        await reporting.shutdown()
        await fast_redis.close()
        await db_pool.close()


async def run_default_job_registration() -> None:
    """Register or refresh the default recurring jobs, then exit."""
    await db_pool.initialize()
    await fast_redis.initialize()
    reporting = build_reporting_container(fast_redis, run_workers=False)
    try:
        await reporting.initialize(register_defaults=True)
    finally:
        await reporting.shutdown()
        await fast_redis.close()
        await db_pool.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "reporting": run_reporting_worker,
    "register_defaults": run_default_job_registration,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "reporting").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
