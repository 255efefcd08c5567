"""
tests/fakes.py

In-memory stand-ins shared by the query-engine tests: a scriptable data
source adapter, a dict-backed Redis double, and a list-backed execution
store.  None of them touch real infrastructure.
"""
from __future__ import annotations

import asyncio
from typing import Any

from sellerlens.models.schemas.query import QueryRequest
from sellerlens.query.execution import NodeExecutionRecord, QueryExecution
from sellerlens.query.plan import (
    Capability,
    QueryNode,
    SourceConfig,
    SourceType,
    TimeWindow,
)
from sellerlens.sources.base import DataSourceAdapter
from sellerlens.sources.registry import DataSourceRegistry


class FakeAdapter(DataSourceAdapter):
    """Adapter returning canned records, or raising, after an optional delay."""

    def __init__(
        self,
        source_type: SourceType,
        records: list[dict[str, Any]] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
        capabilities: frozenset[Capability] = frozenset({Capability.TIME_RANGE, Capability.FILTERING}),
        healthy: bool = True,
    ) -> None:
        self.id = f"fake-{source_type.value.lower()}"
        self.source_type = source_type
        self.name = f"Fake {source_type.value}"
        self.capabilities = capabilities
        self._records = records or []
        self._error = error
        self._delay = delay
        self._healthy = healthy
        self.calls: list[SourceConfig] = []

    async def fetch(self, config: SourceConfig) -> list[dict[str, Any]]:
        self.calls.append(config)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return [dict(r) for r in self._records]

    async def health_check(self) -> bool:
        return self._healthy


class FakeRedis:
    """Minimal async Redis double supporting GET and SET with EX/NX."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True


class ListExecutionStore:
    """Execution store that keeps appended rows in lists."""

    def __init__(self) -> None:
        self.nodes: list[tuple[str, int, str, NodeExecutionRecord]] = []
        self.executions: list[QueryExecution] = []

    async def append_node(
        self,
        execution: QueryExecution,
        sequence: int,
        node: QueryNode,
        record: NodeExecutionRecord,
    ) -> None:
        self.nodes.append((execution.id, sequence, node.id, record))

    async def append_execution(self, execution: QueryExecution) -> None:
        self.executions.append(execution)


def make_registry(*adapters: DataSourceAdapter) -> DataSourceRegistry:
    registry = DataSourceRegistry()
    for adapter in adapters:
        registry.register(adapter)
    return registry


def make_events(n: int, *, start: int = 1_700_000_000_000, value: float = 10.0) -> list[dict[str, Any]]:
    return [
        {"id": str(i), "seller_id": "seller-1", "timestamp": start + i * 1000, "type": "SALE", "value": value + i}
        for i in range(n)
    ]


def source_config(source_type: SourceType = SourceType.RING_BUFFER, **kwargs: Any) -> SourceConfig:
    return SourceConfig(
        source_type=source_type,
        seller_id="seller-1",
        time_window=TimeWindow(start=0, end=2_000_000_000_000),
        **kwargs,
    )


def make_request(**overrides: Any) -> QueryRequest:
    payload: dict[str, Any] = {
        "sellerId": "seller-1",
        "queryType": "ANOMALY",
        "window": {"start": 1_700_000_000_000, "end": 1_700_086_400_000},
        "operators": ["FIR", "FFT"],
        "output": ["JSON"],
    }
    payload.update(overrides)
    return QueryRequest.model_validate(payload)
