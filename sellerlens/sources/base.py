"""
sellerlens/sources/base.py

Uniform adapter contract over one physical or logical data backend.

Each adapter declares a static capability set and a baseline performance
profile.  Capability declarations are advisory: the federated coordinator
filters on them before dispatch, but ``fetch`` on an adapter that lacks a
capability simply returns best-effort results.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sellerlens.query.plan import Capability, SourceConfig, SourceType
from sellerlens.storage import record_store

logger = structlog.get_logger(__name__)

# Anything that opens a new AsyncSession as an async context manager
# (normally the application's async_sessionmaker).
SessionFactory = Callable[[], Any]

Record = dict[str, Any]


class HealthStatus(str, Enum):
    HEALTHY   = "healthy"
    DEGRADED  = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN   = "unknown"


@dataclass(frozen=True)
class PerformanceMetrics:
    """Last measured performance profile of an adapter."""

    avg_latency_ms: float
    throughput_per_sec: float
    reliability: float  # 0.0 – 1.0
    measured_at: datetime


@dataclass(frozen=True)
class DataSourceDescriptor:
    id: str
    type: SourceType
    name: str
    capabilities: frozenset[Capability]
    performance: PerformanceMetrics


class DataSourceAdapter(ABC):
    """Abstract base class for all data source adapters."""

    id: str
    source_type: SourceType
    name: str
    capabilities: frozenset[Capability] = frozenset()

    # Baseline profile reported by performance_snapshot().
    avg_latency_ms: float = 100.0
    throughput_per_sec: float = 1000.0
    reliability: float = 0.99

    @abstractmethod
    async def fetch(self, config: SourceConfig) -> list[Record]:
        """Fetch the records selected by *config*.

        Args:
            config: SOURCE node configuration (seller, window, sampling, ...).

        Returns:
            Ordered list of plain dict records.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the backing store answers a trivial probe."""
        ...

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def performance_snapshot(self) -> PerformanceMetrics:
        return PerformanceMetrics(
            avg_latency_ms=self.avg_latency_ms,
            throughput_per_sec=self.throughput_per_sec,
            reliability=self.reliability,
            measured_at=datetime.now(timezone.utc),
        )

    def descriptor(self) -> DataSourceDescriptor:
        return DataSourceDescriptor(
            id=self.id,
            type=self.source_type,
            name=self.name,
            capabilities=self.capabilities,
            performance=self.performance_snapshot(),
        )


class SqlSourceAdapter(DataSourceAdapter):
    """Adapter backed by a PostgreSQL table reached through a session factory.

    Each fetch opens its own session so concurrent fetches across adapters
    never share a connection.
    """

    # ORM model probed by health_check().
    probe_model: type

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def fetch(self, config: SourceConfig) -> list[Record]:
        async with self._session_factory() as session:
            return await self._query(session, config)

    @abstractmethod
    async def _query(self, session: AsyncSession, config: SourceConfig) -> list[Record]:
        ...

    async def health_check(self) -> bool:
        try:
            async with self._session_factory() as session:
                await record_store.probe_table(session, self.probe_model)
            return True
        except SQLAlchemyError as exc:
            logger.warning("source_probe_failed", source_type=self.source_type.value, error=str(exc))
            return False
