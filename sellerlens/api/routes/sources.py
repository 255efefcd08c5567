"""
sellerlens/api/routes/sources.py

Data source registry endpoints.

GET  /sources         List registered adapters with capabilities,
                      performance profile and last known health (the
                      newer of this process and the health worker).
POST /sources/health  Probe every adapter now and return the outcome.
"""
from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from redis.asyncio import Redis

from sellerlens.api.routes import get_registry, require_api_key
from sellerlens.database.redis import get_redis
from sellerlens.models.schemas.source import (
    DataSourceListResponse,
    DataSourceOut,
    HealthCheckResponse,
    PerformanceOut,
)
from sellerlens.sources.health_board import newer, read_published_health
from sellerlens.sources.registry import DataSourceRegistry

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("", response_model=DataSourceListResponse, summary="List data sources")
async def list_sources(
    registry: DataSourceRegistry = Depends(get_registry),
    redis: Redis = Depends(get_redis),
    _key: str = Depends(require_api_key),
) -> DataSourceListResponse:
    descriptors = registry.descriptors()
    published = await read_published_health(redis, [d.type for d, _ in descriptors])
    items = [
        DataSourceOut(
            id=descriptor.id,
            type=descriptor.type.value,
            name=descriptor.name,
            capabilities=sorted(c.value for c in descriptor.capabilities),
            performance=PerformanceOut(
                avg_latency_ms=descriptor.performance.avg_latency_ms,
                throughput_per_sec=descriptor.performance.throughput_per_sec,
                reliability=descriptor.performance.reliability,
                measured_at=descriptor.performance.measured_at,
            ),
            health_status=health.status.value,
            last_health_check=health.checked_at,
        )
        for descriptor, health in (
            (d, newer(local, published.get(d.type))) for d, local in descriptors
        )
    ]
    return DataSourceListResponse(items=items, total=len(items))


@router.post("/health", response_model=HealthCheckResponse, summary="Probe data source health")
async def check_sources_health(
    registry: DataSourceRegistry = Depends(get_registry),
    _key: str = Depends(require_api_key),
) -> HealthCheckResponse:
    results = await registry.check_health()
    healthy = sum(1 for ok in results.values() if ok)
    return HealthCheckResponse(
        results={source_type.value: ok for source_type, ok in results.items()},
        healthy=healthy,
        unhealthy=len(results) - healthy,
    )
