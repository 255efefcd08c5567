"""
sellerlens/query/errors.py

Structured error taxonomy for the query engine.

Every failure that can cross the API boundary is a ``QueryEngineError``
subclass carrying a stable ``kind`` string, an HTTP status, and (once the
executor has created a record) the id of the execution that failed.

    InvalidRequest       400  malformed request, rejected before compilation
    CyclicPlan           400  hand-authored plan whose dependencies loop
    UnknownDataSource    400  source type with no registered adapter
    AllSourcesFailed     503  federated fetch with zero successful adapters
    InsufficientSources  503  fewer successful adapters than required
    NodeExecutionFailed  500  a node implementation raised
    ExecutionTimeout     504  latency ceiling breached (kind "Timeout")
    ExecutionCancelled   409  cancel() called before completion (kind "Cancelled")
    ExecutionPersistenceFailed
                         500  the execution store rejected a node record
"""
from __future__ import annotations

from typing import Any


class QueryEngineError(Exception):
    """Base class for all structured query-engine errors."""

    kind: str = "QueryEngineError"
    http_status: int = 500

    def __init__(self, message: str, *, execution_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.execution_id = execution_id

    def extra(self) -> dict[str, Any]:
        """Kind-specific fields added to the serialised error body."""
        return {}

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "error": self.kind,
            "detail": self.message,
            "execution_id": self.execution_id,
        }
        body.update(self.extra())
        return body


class InvalidRequest(QueryEngineError):
    kind = "InvalidRequest"
    http_status = 400


class CyclicPlan(QueryEngineError):
    kind = "CyclicPlan"
    http_status = 400


class UnknownDataSource(QueryEngineError):
    kind = "UnknownDataSource"
    http_status = 400

    def __init__(self, source_type: str, *, execution_id: str | None = None) -> None:
        super().__init__(
            f"No adapter registered for source type {source_type!r}",
            execution_id=execution_id,
        )
        self.source_type = source_type

    def extra(self) -> dict[str, Any]:
        return {"source_type": self.source_type}


class AllSourcesFailed(QueryEngineError):
    kind = "AllSourcesFailed"
    http_status = 503

    def __init__(self, sources_failed: int, *, execution_id: str | None = None) -> None:
        super().__init__(
            f"All {sources_failed} data sources failed",
            execution_id=execution_id,
        )
        self.sources_failed = sources_failed

    def extra(self) -> dict[str, Any]:
        return {"sources_succeeded": 0, "sources_failed": self.sources_failed}


class InsufficientSources(QueryEngineError):
    kind = "InsufficientSources"
    http_status = 503

    def __init__(
        self,
        sources_succeeded: int,
        sources_failed: int,
        min_sources_required: int,
        *,
        execution_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Insufficient data sources: {sources_succeeded}/{min_sources_required} required",
            execution_id=execution_id,
        )
        self.sources_succeeded = sources_succeeded
        self.sources_failed = sources_failed
        self.min_sources_required = min_sources_required

    def extra(self) -> dict[str, Any]:
        return {
            "sources_succeeded": self.sources_succeeded,
            "sources_failed": self.sources_failed,
            "min_sources_required": self.min_sources_required,
        }


class NodeExecutionFailed(QueryEngineError):
    kind = "NodeExecutionFailed"
    http_status = 500

    def __init__(
        self,
        node_id: str,
        node_type: str,
        cause: str,
        *,
        execution_id: str | None = None,
    ) -> None:
        super().__init__(
            f"{node_type} node {node_id} failed: {cause}",
            execution_id=execution_id,
        )
        self.node_id = node_id
        self.node_type = node_type

    def extra(self) -> dict[str, Any]:
        return {"node_id": self.node_id, "node_type": self.node_type}


class ExecutionTimeout(QueryEngineError):
    kind = "Timeout"
    http_status = 504

    def __init__(
        self,
        max_latency_ms: int,
        elapsed_ms: float,
        *,
        execution_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Latency ceiling of {max_latency_ms} ms exceeded after {elapsed_ms:.0f} ms",
            execution_id=execution_id,
        )
        self.max_latency_ms = max_latency_ms
        self.elapsed_ms = elapsed_ms

    def extra(self) -> dict[str, Any]:
        return {"max_latency_ms": self.max_latency_ms, "elapsed_ms": round(self.elapsed_ms, 2)}


class ExecutionCancelled(QueryEngineError):
    kind = "Cancelled"
    http_status = 409


class ExecutionPersistenceFailed(QueryEngineError):
    kind = "PersistenceFailed"
    http_status = 500

    def __init__(self, node_id: str, cause: str, *, execution_id: str | None = None) -> None:
        super().__init__(
            f"Recording node {node_id} failed: {cause}",
            execution_id=execution_id,
        )
        self.node_id = node_id

    def extra(self) -> dict[str, Any]:
        return {"node_id": self.node_id}
