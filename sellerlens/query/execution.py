"""
sellerlens/query/execution.py

Runtime record of one plan execution and its per-node trail.

Status state machine
--------------------

  PENDING ─► COMPILING ─► QUEUED ─► RUNNING ─┬─► COMPLETED
     │           │           │               ├─► FAILED
     └───────────┴───────────┴─► FAILED      ├─► CANCELLED
                             └─► CANCELLED   └─► TIMEOUT

Terminal statuses accept no further transition and freeze the record:
no node records may be appended afterwards.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sellerlens.query.errors import QueryEngineError
from sellerlens.query.plan import NodeType, QueryPlan


class ExecutionStatus(str, Enum):
    PENDING   = "PENDING"
    COMPILING = "COMPILING"
    QUEUED    = "QUEUED"
    RUNNING   = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED    = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT   = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
})

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.COMPILING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.COMPILING: frozenset({
        ExecutionStatus.QUEUED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.QUEUED: frozenset({
        ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMEOUT,
    }),
}


class NodeStatus(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED    = "FAILED"
    CANCELLED = "CANCELLED"


class InvalidTransition(RuntimeError):
    """Raised when the executor attempts a transition the state machine forbids."""


@dataclass(frozen=True)
class NodeExecutionRecord:
    node_id: str
    node_type: NodeType
    status: NodeStatus
    started_at: datetime
    completed_at: datetime
    latency_ms: float
    output: Any = None
    error: str | None = None


@dataclass
class QueryExecution:
    """Mutable run record, owned by the executor until it reaches a terminal status."""

    id: str
    plan: QueryPlan
    status: ExecutionStatus = ExecutionStatus.PENDING
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    node_records: list[NodeExecutionRecord] = field(default_factory=list)
    result: Any = None
    error: QueryEngineError | None = None
    nodes_executed: int = 0
    total_latency_ms: float = 0.0
    data_points_processed: int = 0
    warnings: list[str] = field(default_factory=list)

    def transition(self, target: ExecutionStatus) -> None:
        allowed = ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if target not in allowed:
            raise InvalidTransition(f"{self.status.value} -> {target.value} is not allowed")
        self.status = target
        now = datetime.now(timezone.utc)
        if target == ExecutionStatus.RUNNING:
            self.started_at = now
        elif target.is_terminal:
            self.completed_at = now

    def record_node(self, record: NodeExecutionRecord) -> None:
        if self.status.is_terminal:
            raise InvalidTransition(f"execution {self.id} is {self.status.value}; trail is frozen")
        self.node_records.append(record)
        if record.status == NodeStatus.COMPLETED:
            self.nodes_executed += 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    @property
    def error_message(self) -> str | None:
        return self.error.message if self.error is not None else None
