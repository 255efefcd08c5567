"""
sellerlens/query/cache.py

Redis-backed result cache keyed by request fingerprint.

Entries are immutable: ``put`` writes with ``SET NX EX`` so a concurrent or
repeated write for the same fingerprint never replaces the first payload,
and an entry simply disappears when its TTL lapses.

A Redis outage degrades to a cache miss (logged); it never fails a query.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from sellerlens.config import settings
from sellerlens.models.schemas.query import QueryRequest
from sellerlens.query.plan import canonical_json

logger = structlog.get_logger(__name__)

_REDIS_KEY_PREFIX = "query:result:"


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    result: Any
    plan: dict[str, Any]
    cached_at: str
    expires_at: str


def compute_fingerprint(request: QueryRequest) -> str:
    """SHA-256 of the canonical JSON of the normalised request.

    Field names (never camelCase aliases) are used and ``None`` fields are
    dropped, so equivalent requests written either way share a fingerprint.
    """
    normalised = request.model_dump(mode="json", exclude_none=True)
    return hashlib.sha256(canonical_json(normalised).encode("utf-8")).hexdigest()


def ttl_for_volume(record_count: int) -> int:
    """TTL in seconds for a result computed over *record_count* records."""
    if record_count <= settings.cache_small_dataset_records:
        return settings.cache_ttl_small_seconds
    if record_count >= settings.cache_large_dataset_records:
        return settings.cache_ttl_large_seconds
    return settings.cache_ttl_seconds


class ResultCache:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @staticmethod
    def _key(fingerprint: str) -> str:
        return f"{_REDIS_KEY_PREFIX}{fingerprint}"

    async def get(self, fingerprint: str) -> CacheEntry | None:
        try:
            raw = await self._redis.get(self._key(fingerprint))
        except RedisError as exc:
            logger.warning("result_cache_unavailable", op="get", error=str(exc))
            return None
        if raw is None:
            logger.debug("result_cache_miss", fingerprint=fingerprint[:16])
            return None
        logger.info("result_cache_hit", fingerprint=fingerprint[:16])
        return CacheEntry(**json.loads(raw))

    async def put(
        self,
        fingerprint: str,
        result: Any,
        plan: dict[str, Any],
        ttl_seconds: int | None = None,
    ) -> bool:
        """Store *result* unless an entry already exists. Returns True when written."""
        ttl = ttl_seconds or settings.cache_ttl_seconds
        now = datetime.now(timezone.utc)
        entry = CacheEntry(
            fingerprint=fingerprint,
            result=result,
            plan=plan,
            cached_at=now.isoformat(),
            expires_at=(now + timedelta(seconds=ttl)).isoformat(),
        )
        try:
            written = await self._redis.set(
                self._key(fingerprint),
                json.dumps(asdict(entry), default=str),
                ex=ttl,
                nx=True,
            )
        except RedisError as exc:
            logger.warning("result_cache_unavailable", op="put", error=str(exc))
            return False
        logger.debug(
            "result_cache_put",
            fingerprint=fingerprint[:16],
            ttl=ttl,
            written=bool(written),
        )
        return bool(written)
