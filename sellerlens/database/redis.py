"""
sellerlens/database/redis.py

Redis connection pool backing the query result cache.

The pool is created once during application startup and shared by every
request; ``get_redis`` hands out lightweight clients bound to that pool.
"""
from collections.abc import AsyncGenerator

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from sellerlens.config import settings

logger = structlog.get_logger(__name__)

_pool: ConnectionPool | None = None


def _get_pool() -> ConnectionPool:
    if _pool is None:
        raise RuntimeError("Redis pool not initialised. Call init_redis() first.")
    return _pool


async def init_redis() -> None:
    """Create the Redis connection pool and verify connectivity (called on app startup)."""
    global _pool
    _pool = ConnectionPool.from_url(
        settings.redis_url,
        max_connections=20,
        decode_responses=True,
    )
    client = Redis(connection_pool=_pool)
    try:
        await client.ping()
    finally:
        await client.aclose()


async def close_redis() -> None:
    """Close the Redis connection pool (called on app shutdown)."""
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None


async def redis_is_healthy() -> bool:
    """Ping Redis through the shared pool; False when unreachable or not started."""
    if _pool is None:
        return False
    client = Redis(connection_pool=_pool)
    try:
        return bool(await client.ping())
    except RedisError as exc:
        logger.warning("redis_ping_failed", error=str(exc))
        return False
    finally:
        await client.aclose()


def get_client() -> Redis:
    """A client bound to the shared pool; the caller closes it."""
    return Redis(connection_pool=_get_pool())


async def get_redis() -> AsyncGenerator[Redis, None]:
    """FastAPI dependency that yields a Redis client."""
    client = get_client()
    try:
        yield client
    finally:
        await client.aclose()
