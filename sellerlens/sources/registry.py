"""
sellerlens/sources/registry.py

Mapping from ``SourceType`` to the adapter that serves it, plus an advisory
health flag per type.

The registry is an ordinary object: the application builds one at startup
(``build_default_registry``) and hands it to the coordinator, the executor
and the routes.  Registration and health updates are last-writer-wins with
no locking; the flags are hints, never a gate.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from sellerlens.query.errors import UnknownDataSource
from sellerlens.query.plan import SourceType
from sellerlens.sources.aggregate_store import AggregateStoreAdapter
from sellerlens.sources.base import (
    DataSourceAdapter,
    DataSourceDescriptor,
    HealthStatus,
    SessionFactory,
)
from sellerlens.sources.cold_store import HistoricalColdStoreAdapter
from sellerlens.sources.metrics_cache import CachedMetricsAdapter
from sellerlens.sources.ring_buffer import RingBufferAdapter
from sellerlens.sources.webhook import ExternalWebhookAdapter

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SourceHealth:
    status: HealthStatus
    checked_at: datetime | None = None


class DataSourceRegistry:
    def __init__(self) -> None:
        self._adapters: dict[SourceType, DataSourceAdapter] = {}
        self._health: dict[SourceType, SourceHealth] = {}

    def register(self, adapter: DataSourceAdapter) -> None:
        """Register *adapter* for its source type, replacing any previous one."""
        previous = self._adapters.get(adapter.source_type)
        self._adapters[adapter.source_type] = adapter
        self._health[adapter.source_type] = SourceHealth(HealthStatus.UNKNOWN)
        logger.info(
            "source_registered",
            source_type=adapter.source_type.value,
            adapter=adapter.id,
            replaced=previous.id if previous is not None else None,
        )

    def resolve(self, source_type: SourceType | str) -> DataSourceAdapter:
        try:
            return self._adapters[SourceType(source_type)]
        except (KeyError, ValueError):
            raise UnknownDataSource(str(getattr(source_type, "value", source_type))) from None

    def get(self, source_type: SourceType) -> DataSourceAdapter | None:
        return self._adapters.get(source_type)

    def all(self) -> list[DataSourceAdapter]:
        return list(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, source_type: object) -> bool:
        return source_type in self._adapters

    # ── Health ───────────────────────────────────────────────────────────────

    def set_health(self, source_type: SourceType, healthy: bool) -> None:
        status = HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY
        self._health[source_type] = SourceHealth(status, datetime.now(timezone.utc))

    def health(self, source_type: SourceType) -> SourceHealth:
        return self._health.get(source_type, SourceHealth(HealthStatus.UNKNOWN))

    async def check_health(self) -> dict[SourceType, bool]:
        """Probe every registered adapter concurrently and record the outcome."""
        adapters = self.all()
        outcomes = await asyncio.gather(
            *(adapter.health_check() for adapter in adapters),
            return_exceptions=True,
        )
        results: dict[SourceType, bool] = {}
        for adapter, outcome in zip(adapters, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "source_health_probe_error",
                    source_type=adapter.source_type.value,
                    error=str(outcome),
                )
                healthy = False
            else:
                healthy = bool(outcome)
            self.set_health(adapter.source_type, healthy)
            results[adapter.source_type] = healthy

        logger.info(
            "source_health_checked",
            healthy=sum(results.values()),
            unhealthy=len(results) - sum(results.values()),
        )
        return results

    def descriptors(self) -> list[tuple[DataSourceDescriptor, SourceHealth]]:
        return [(adapter.descriptor(), self.health(adapter.source_type)) for adapter in self.all()]


def build_default_registry(session_factory: SessionFactory) -> DataSourceRegistry:
    """Registry with the five built-in adapters sharing *session_factory*."""
    registry = DataSourceRegistry()
    registry.register(RingBufferAdapter(session_factory))
    registry.register(AggregateStoreAdapter(session_factory))
    registry.register(CachedMetricsAdapter(session_factory))
    registry.register(HistoricalColdStoreAdapter(session_factory))
    registry.register(ExternalWebhookAdapter())
    return registry
