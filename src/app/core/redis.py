"""Redis connection pool and cross-instance job locks.

Locks are plain ``SET key token NX EX ttl`` entries. Release only deletes
the key when the stored token still matches, so a lock that expired and was
re-acquired by another instance is never released by the previous holder.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis
import structlog

from src.app.config import get_settings

logger = structlog.get_logger(__name__)

LOCK_PREFIX = "salesops:lock:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.close()
        _redis_pool = None


# ── Locks ──────────────────────────────────────────────────────────────────


class JobLock:
    """Named Redis lock with a TTL.

    Args:
        redis_client: Async Redis client.
        default_ttl: Lock lifetime in seconds when acquire() gets no ttl.
    """

    def __init__(self, redis_client: aioredis.Redis, default_ttl: int = 900) -> None:
        self._redis = redis_client
        self._default_ttl = default_ttl

    async def acquire(self, name: str, ttl: int | None = None) -> str | None:
        """Try to take the lock. Returns the owner token, or None if held elsewhere."""
        token = uuid.uuid4().hex
        acquired = await self._redis.set(
            f"{LOCK_PREFIX}{name}",
            token,
            nx=True,
            ex=ttl or self._default_ttl,
        )
        if not acquired:
            logger.info("lock.busy", name=name)
            return None
        return token

    async def release(self, name: str, token: str) -> bool:
        """Release the lock if this token still owns it."""
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, f"{LOCK_PREFIX}{name}", token)
        return bool(released)


def get_job_lock() -> JobLock:
    """JobLock bound to the global Redis pool."""
    settings = get_settings()
    return JobLock(get_redis_pool(), default_ttl=settings.JOB_LOCK_TTL_SECONDS)
