from sellerlens.models.schemas.query import (
    CustomNode,
    CustomPlan,
    ExecutionOut,
    NodeExecutionOut,
    PlanSummary,
    QueryConstraints,
    QueryRequest,
    QueryResponse,
    SamplingRequest,
    TimeWindow,
)
from sellerlens.models.schemas.source import (
    DataSourceListResponse,
    DataSourceOut,
    HealthCheckResponse,
    PerformanceOut,
)

__all__ = [
    "CustomNode",
    "CustomPlan",
    "ExecutionOut",
    "NodeExecutionOut",
    "PlanSummary",
    "QueryConstraints",
    "QueryRequest",
    "QueryResponse",
    "SamplingRequest",
    "TimeWindow",
    "DataSourceListResponse",
    "DataSourceOut",
    "HealthCheckResponse",
    "PerformanceOut",
]
