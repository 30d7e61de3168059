# app/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Compare-and-delete so a lock is only released by the holder that set it
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class FastRedisClient:
    """Pooled Redis client backing the reporting queue and period locks.

    Queue primitives raise after logging so a broken backend surfaces as a
    job failure instead of a silently lost job.
    """

    def __init__(self):
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", host=settings.redis_host())

            self.pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Fast Redis client initialized successfully",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
            )

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized, fallback if not"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    async def acquire_lock(self, key: str, token: str, ttl_s: int) -> bool:
        """SET NX with expiry. Returns False when another holder owns the key."""
        try:
            await self._ensure_initialized()
            result = await self.client.set(key, token, nx=True, ex=ttl_s)
            return bool(result)
        except Exception as e:
            logger.error("Redis lock acquire failed", key=key[:60], error=str(e))
            raise

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock only if it is still held with the given token."""
        try:
            await self._ensure_initialized()
            result = await self.client.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)
            return bool(result)
        except Exception as e:
            logger.error("Redis lock release failed", key=key[:60], error=str(e))
            return False

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    async def hash_set(self, key: str, field: str, value: str) -> None:
        try:
            await self._ensure_initialized()
            await self.client.hset(key, field, value)
        except Exception as e:
            logger.error("Redis HSET failed", key=key[:60], field=field[:60], error=str(e))
            raise

    async def hash_set_if_absent(self, key: str, field: str, value: str) -> bool:
        """HSETNX - True when the field was created by this call."""
        try:
            await self._ensure_initialized()
            result = await self.client.hsetnx(key, field, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis HSETNX failed", key=key[:60], field=field[:60], error=str(e))
            raise

    async def hash_get(self, key: str, field: str) -> str | None:
        try:
            await self._ensure_initialized()
            return await self.client.hget(key, field)
        except Exception as e:
            logger.error("Redis HGET failed", key=key[:60], field=field[:60], error=str(e))
            raise

    async def hash_get_all(self, key: str) -> dict[str, str]:
        try:
            await self._ensure_initialized()
            result = await self.client.hgetall(key)
            return dict(result) if result else {}
        except Exception as e:
            logger.error("Redis HGETALL failed", key=key[:60], error=str(e))
            raise

    async def hash_delete(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        try:
            await self._ensure_initialized()
            return int(await self.client.hdel(key, *fields))
        except Exception as e:
            logger.error("Redis HDEL failed", key=key[:60], error=str(e))
            raise

    # ------------------------------------------------------------------
    # Sorted sets (queue states)
    # ------------------------------------------------------------------

    async def zset_add(self, key: str, member: str, score: float) -> None:
        try:
            await self._ensure_initialized()
            await self.client.zadd(key, {member: score})
        except Exception as e:
            logger.error("Redis ZADD failed", key=key[:60], member=member[:60], error=str(e))
            raise

    async def zset_pop_min(self, key: str) -> tuple[str, float] | None:
        """Atomically pop the lowest-scored member."""
        try:
            await self._ensure_initialized()
            result = await self.client.zpopmin(key, 1)
            if not result:
                return None
            member, score = result[0]
            return member, float(score)
        except Exception as e:
            logger.error("Redis ZPOPMIN failed", key=key[:60], error=str(e))
            raise

    async def zset_remove(self, key: str, *members: str) -> int:
        if not members:
            return 0
        try:
            await self._ensure_initialized()
            return int(await self.client.zrem(key, *members))
        except Exception as e:
            logger.error("Redis ZREM failed", key=key[:60], error=str(e))
            raise

    async def zset_range_by_score(
        self, key: str, min_score: float, max_score: float, limit: int | None = None
    ) -> list[str]:
        try:
            await self._ensure_initialized()
            if limit is not None:
                result = await self.client.zrangebyscore(
                    key, min_score, max_score, start=0, num=limit
                )
            else:
                result = await self.client.zrangebyscore(key, min_score, max_score)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis ZRANGEBYSCORE failed", key=key[:60], error=str(e))
            raise

    async def zset_range(
        self, key: str, start: int = 0, end: int = -1, desc: bool = False
    ) -> list[str]:
        try:
            await self._ensure_initialized()
            result = await self.client.zrange(key, start, end, desc=desc)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis ZRANGE failed", key=key[:60], error=str(e))
            raise

    async def zset_card(self, key: str) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.zcard(key))
        except Exception as e:
            logger.error("Redis ZCARD failed", key=key[:60], error=str(e))
            raise

    async def zset_score(self, key: str, member: str) -> float | None:
        try:
            await self._ensure_initialized()
            result = await self.client.zscore(key, member)
            return float(result) if result is not None else None
        except Exception as e:
            logger.error("Redis ZSCORE failed", key=key[:60], error=str(e))
            raise


# Global instance
fast_redis = FastRedisClient()
