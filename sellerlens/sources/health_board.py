"""
sellerlens/sources/health_board.py

Redis-published source health, shared between the health worker and the
API process.

The worker builds its own registry, so its in-memory health flags never
reach the API.  After each probe it writes one ``source:health:{TYPE}`` key
per adapter (JSON ``{"healthy", "checked_at"}``) that expires after a few
probe intervals.  ``GET /sources`` reads those keys and reports whichever
reading is newer: the published one or the API registry's own.

Like the result cache, a Redis outage is logged and treated as "nothing
published"; it never fails a request or stops the worker.
"""
from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from sellerlens.query.plan import SourceType
from sellerlens.sources.base import HealthStatus
from sellerlens.sources.registry import SourceHealth

logger = structlog.get_logger(__name__)

_REDIS_KEY_PREFIX = "source:health:"


def _key(source_type: SourceType) -> str:
    return f"{_REDIS_KEY_PREFIX}{source_type.value}"


async def publish_health(
    redis: Redis,
    results: dict[SourceType, bool],
    ttl_seconds: int,
    checked_at: datetime | None = None,
) -> None:
    """Write one expiring health key per probed source."""
    stamp = (checked_at or datetime.now(timezone.utc)).isoformat()
    try:
        for source_type, healthy in results.items():
            payload = json.dumps({"healthy": healthy, "checked_at": stamp})
            await redis.set(_key(source_type), payload, ex=ttl_seconds)
    except RedisError as exc:
        logger.warning("source_health_publish_failed", error=str(exc))
        return
    logger.debug("source_health_published", sources=len(results), ttl_seconds=ttl_seconds)


async def read_published_health(
    redis: Redis,
    source_types: Iterable[SourceType],
) -> dict[SourceType, SourceHealth]:
    """Published health for each of *source_types* that has a live key."""
    published: dict[SourceType, SourceHealth] = {}
    try:
        for source_type in source_types:
            raw = await redis.get(_key(source_type))
            if raw is None:
                continue
            data = json.loads(raw)
            published[source_type] = SourceHealth(
                status=HealthStatus.HEALTHY if data["healthy"] else HealthStatus.UNHEALTHY,
                checked_at=datetime.fromisoformat(data["checked_at"]),
            )
    except RedisError as exc:
        logger.warning("source_health_read_failed", error=str(exc))
    return published


def newer(local: SourceHealth, published: SourceHealth | None) -> SourceHealth:
    """The more recent of two readings; an unchecked reading always loses."""
    if published is None or published.checked_at is None:
        return local
    if local.checked_at is None or published.checked_at > local.checked_at:
        return published
    return local
