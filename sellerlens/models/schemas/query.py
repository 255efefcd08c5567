from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from sellerlens.query.plan import (
    ExecutionMode,
    NodeType,
    OutputFormat,
    QueryKind,
    SamplingStrategy,
)


class _RequestModel(BaseModel):
    """Immutable request model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class TimeWindow(_RequestModel):
    """Closed time window in epoch milliseconds."""
    start: int = Field(..., ge=0, description="Window start (epoch ms)")
    end: int = Field(..., ge=0, description="Window end (epoch ms)")

    @model_validator(mode="after")
    def _start_before_end(self) -> TimeWindow:
        if self.start > self.end:
            raise ValueError("window start must not be after window end")
        return self


class QueryConstraints(_RequestModel):
    """Optional execution ceilings carried into the compiled plan."""
    max_latency_ms: int | None = Field(default=None, gt=0)
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    max_cost: float | None = Field(default=None, ge=0.0)


class SamplingRequest(_RequestModel):
    """Record-level sampling applied by the ring-buffer source."""
    enabled: bool = False
    rate: float = Field(default=1.0, gt=0.0, le=1.0)
    strategy: SamplingStrategy = SamplingStrategy.UNIFORM


class CustomNode(_RequestModel):
    """One node of a hand-authored plan."""
    id: str = Field(..., min_length=1)
    type: NodeType
    config: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)


class CustomPlan(_RequestModel):
    """Hand-authored DAG submitted in place of the compiled default chain."""
    nodes: list[CustomNode] = Field(..., min_length=1)
    execution_mode: ExecutionMode = ExecutionMode.ADAPTIVE


class QueryRequest(_RequestModel):
    """Declarative analytics query submitted by a seller dashboard."""
    seller_id: str = Field(..., min_length=1, description="Seller identifier")
    query_type: QueryKind = Field(..., description="ANOMALY, PREDICTION, INSIGHT, FUNNEL or CUSTOM")
    window: TimeWindow
    operators: list[str] = Field(default_factory=list, description="Ordered transform operator names")
    output: list[OutputFormat] = Field(default_factory=list, description="Requested output formats")
    constraints: QueryConstraints | None = None
    sampling: SamplingRequest | None = None
    reproducible: bool = Field(default=False, description="Reject non-deterministic sampling when true")
    custom_plan: CustomPlan | None = None

    @field_validator("seller_id")
    @classmethod
    def _strip_seller_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("seller_id must not be blank")
        return value

    @field_validator("operators")
    @classmethod
    def _normalise_operators(cls, value: list[str]) -> list[str]:
        return [op.strip().upper() for op in value if op.strip()]


class PlanSummary(BaseModel):
    id: str
    nodes: int
    reproducibility_hash: str


class QueryResponse(BaseModel):
    """Result of the compile+execute entrypoint."""
    cached: bool
    result: Any = None
    plan: PlanSummary | None = None
    execution_id: str | None = None
    fingerprint: str
    warnings: list[str] = Field(default_factory=list)


class NodeExecutionOut(BaseModel):
    node_id: str
    node_type: str
    status: str
    latency_ms: float | None = None
    output: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ExecutionOut(BaseModel):
    id: str
    seller_id: str
    query_type: str
    status: str
    reproducibility_hash: str
    config_version: str
    submitted_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    nodes_executed: int = 0
    total_latency_ms: float | None = None
    data_points_processed: int = 0
    result: Any = None
    error: str | None = None
    error_kind: str | None = None
    nodes: list[NodeExecutionOut] = Field(default_factory=list)
