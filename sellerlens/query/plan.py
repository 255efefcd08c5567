"""
sellerlens/query/plan.py

Typed query-plan DAG: node variants, their configurations, and the
immutable ``QueryPlan`` that owns them.

Nodes reference each other only by id (``dependencies``); the plan owns
every node.  All types here are frozen dataclasses so a compiled plan can be
shared between the executor, the cache and the execution record without
copying.

Canonical serialisation
-----------------------
``canonical_json`` renders any plan fragment as sorted-key, whitespace-free
JSON.  It is the single input format for both the reproducibility hash of a
plan and the content-addressed node ids, so two compilations of the same
request always hash to the same digest.
"""
from __future__ import annotations

import dataclasses
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class QueryKind(str, Enum):
    ANOMALY    = "ANOMALY"
    PREDICTION = "PREDICTION"
    INSIGHT    = "INSIGHT"
    FUNNEL     = "FUNNEL"
    CUSTOM     = "CUSTOM"


class NodeType(str, Enum):
    SOURCE    = "SOURCE"
    TRANSFORM = "TRANSFORM"
    AGGREGATE = "AGGREGATE"
    SCORE     = "SCORE"
    OUTPUT    = "OUTPUT"


class SourceType(str, Enum):
    RING_BUFFER           = "RING_BUFFER"
    AGGREGATE_STORE       = "AGGREGATE_STORE"
    CACHED_METRICS        = "CACHED_METRICS"
    HISTORICAL_COLD_STORE = "HISTORICAL_COLD_STORE"
    EXTERNAL_WEBHOOK      = "EXTERNAL_WEBHOOK"


class Capability(str, Enum):
    TIME_RANGE  = "TIME_RANGE"
    FILTERING   = "FILTERING"
    AGGREGATION = "AGGREGATION"
    JOIN        = "JOIN"
    STREAMING   = "STREAMING"


class ScoreType(str, Enum):
    ANOMALY    = "ANOMALY"
    PREDICTION = "PREDICTION"
    HEALTH     = "HEALTH"
    QUALITY    = "QUALITY"
    CONFIDENCE = "CONFIDENCE"
    RISK       = "RISK"


class OutputFormat(str, Enum):
    JSON        = "JSON"
    TIME_SERIES = "TIME_SERIES"
    AGGREGATED  = "AGGREGATED"
    SCORED      = "SCORED"
    ATTRIBUTED  = "ATTRIBUTED"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL   = "parallel"
    ADAPTIVE   = "adaptive"


class SamplingStrategy(str, Enum):
    UNIFORM    = "uniform"
    ADAPTIVE   = "adaptive"
    STRATIFIED = "stratified"


class MergeStrategy(str, Enum):
    UNION = "union"
    JOIN  = "join"


# ---------------------------------------------------------------------------
# Node configurations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeWindow:
    """Closed interval in epoch milliseconds."""

    start: int
    end: int


@dataclass(frozen=True)
class SamplingPolicy:
    enabled: bool = False
    rate: float = 1.0
    strategy: SamplingStrategy = SamplingStrategy.UNIFORM


@dataclass(frozen=True)
class SourceConfig:
    """Configuration of a SOURCE node.

    ``federated_sources`` lists extra source types fetched alongside
    ``source_type``; when non-empty the node runs a federated fetch merged
    with ``merge_strategy``.  ``min_sources_required`` switches the fetch to
    partial-result mode with that success floor.
    """

    source_type: SourceType
    seller_id: str
    time_window: TimeWindow
    metric_type: str | None = None
    sampling: SamplingPolicy = field(default_factory=SamplingPolicy)
    federated_sources: tuple[SourceType, ...] = ()
    merge_strategy: MergeStrategy = MergeStrategy.UNION
    join_key: str | None = None
    min_sources_required: int | None = None
    required_capabilities: tuple[Capability, ...] = ()

    @property
    def is_federated(self) -> bool:
        return bool(self.federated_sources)

    def for_source(self, source_type: SourceType) -> SourceConfig:
        """Return a single-adapter copy of this config targeting *source_type*."""
        return dataclasses.replace(self, source_type=source_type, federated_sources=())


@dataclass(frozen=True)
class TransformConfig:
    operator: str
    parameters: dict[str, Any] = field(default_factory=dict)
    deterministic: bool = True
    parallelizable: bool = False


@dataclass(frozen=True)
class AggregateConfig:
    function: str
    group_by: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScoreConfig:
    score_type: ScoreType
    algorithm: str = "default"
    attribution: bool = True
    confidence_level: float = 0.8
    thresholds: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class OutputConfig:
    format: OutputFormat = OutputFormat.JSON
    limit: int = 100
    fields: tuple[str, ...] = ()


NodeConfig = Union[SourceConfig, TransformConfig, AggregateConfig, ScoreConfig, OutputConfig]

_CONFIG_TYPES: dict[NodeType, type] = {
    NodeType.SOURCE:    SourceConfig,
    NodeType.TRANSFORM: TransformConfig,
    NodeType.AGGREGATE: AggregateConfig,
    NodeType.SCORE:     ScoreConfig,
    NodeType.OUTPUT:    OutputConfig,
}


# ---------------------------------------------------------------------------
# Nodes and plans
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueryNode:
    id: str
    type: NodeType
    config: NodeConfig
    dependencies: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        expected = _CONFIG_TYPES[self.type]
        if not isinstance(self.config, expected):
            raise TypeError(
                f"{self.type.value} node requires {expected.__name__}, "
                f"got {type(self.config).__name__}"
            )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "config": to_jsonable(self.config),
            "dependencies": list(self.dependencies),
        }


@dataclass(frozen=True)
class QueryPlan:
    """Compiled, immutable DAG derived from a query request."""

    id: str
    seller_id: str
    query_type: QueryKind
    nodes: tuple[QueryNode, ...]
    reproducibility_hash: str
    execution_mode: ExecutionMode = ExecutionMode.ADAPTIVE
    version: str = "1.0"
    config_version: str = "1.0.0"
    max_latency_ms: int | None = None
    min_confidence: float | None = None
    max_cost: float | None = None
    estimated_cost: float = 0.0

    def nodes_of_type(self, node_type: NodeType) -> list[QueryNode]:
        return [n for n in self.nodes if n.type == node_type]

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "nodes": len(self.nodes),
            "reproducibility_hash": self.reproducibility_hash,
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "query_type": self.query_type.value,
            "version": self.version,
            "config_version": self.config_version,
            "execution_mode": self.execution_mode.value,
            "max_latency_ms": self.max_latency_ms,
            "min_confidence": self.min_confidence,
            "max_cost": self.max_cost,
            "estimated_cost": self.estimated_cost,
            "reproducibility_hash": self.reproducibility_hash,
            "nodes": [n.as_dict() for n in self.nodes],
        }


# ---------------------------------------------------------------------------
# Canonical serialisation and hashing
# ---------------------------------------------------------------------------

def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and tuples into plain JSON-compatible values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def canonical_json(value: Any) -> str:
    return json.dumps(to_jsonable(value), sort_keys=True, separators=(",", ":"), default=str)


def digest(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON rendering of *value*."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def structural_content(
    nodes: tuple[QueryNode, ...] | list[QueryNode],
    *,
    execution_mode: ExecutionMode,
    version: str,
    config_version: str,
    max_latency_ms: int | None,
    min_confidence: float | None,
    max_cost: float | None,
) -> dict[str, Any]:
    """Plan content that feeds the reproducibility hash.

    Dependencies are rewritten as positions in the node list, so node ids
    (generated or authored) never influence the digest.
    """
    position = {node.id: idx for idx, node in enumerate(nodes)}
    return {
        "version": version,
        "config_version": config_version,
        "execution_mode": execution_mode.value,
        "constraints": {
            "max_latency_ms": max_latency_ms,
            "min_confidence": min_confidence,
            "max_cost": max_cost,
        },
        "nodes": [
            {
                "type": node.type.value,
                "config": to_jsonable(node.config),
                "dependencies": sorted(position[d] for d in node.dependencies),
            }
            for node in nodes
        ],
    }
