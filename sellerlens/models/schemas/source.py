from datetime import datetime

from pydantic import BaseModel, Field


class PerformanceOut(BaseModel):
    avg_latency_ms: float
    throughput_per_sec: float
    reliability: float = Field(..., ge=0.0, le=1.0)
    measured_at: datetime


class DataSourceOut(BaseModel):
    """Registered data source adapter as exposed by GET /sources."""
    id: str
    type: str
    name: str
    capabilities: list[str]
    performance: PerformanceOut
    health_status: str
    last_health_check: datetime | None = None


class DataSourceListResponse(BaseModel):
    items: list[DataSourceOut]
    total: int


class HealthCheckResponse(BaseModel):
    """Outcome of probing every registered adapter."""
    results: dict[str, bool]
    healthy: int
    unhealthy: int
