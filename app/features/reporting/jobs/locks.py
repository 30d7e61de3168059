"""Period-scoped generation locks so one report period is built at a time."""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def report_lock_key(report_type: str, period_start: date) -> str:
    return f"report-lock:{report_type}:{period_start.isoformat()}"


class ReportLockManager:
    def __init__(self, redis_client, ttl_s: int = 900):
        self.redis = redis_client
        self.ttl_s = ttl_s

    @asynccontextmanager
    async def hold(self, report_type: str, period_start: date) -> AsyncIterator[bool]:
        """
        Yield True when this caller owns the period lock, False when another
        generation for the same period is already running.
        """
        key = report_lock_key(report_type, period_start)
        token = uuid.uuid4().hex
        acquired = await self.redis.acquire_lock(key, token, self.ttl_s)
        if not acquired:
            logger.warning("Report generation already in progress", lock_key=key)
        try:
            yield acquired
        finally:
            if acquired:
                await self.redis.release_lock(key, token)
