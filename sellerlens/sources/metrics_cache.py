"""
sellerlens/sources/metrics_cache.py

Latest pre-computed metric snapshot for a seller.  The time window is
ignored: the snapshot is whatever was computed last.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from sellerlens.models.sql.metric_snapshot import MetricSnapshot
from sellerlens.query.plan import Capability, SourceConfig, SourceType
from sellerlens.sources.base import Record, SqlSourceAdapter
from sellerlens.storage import record_store

DEFAULT_METRIC_TYPE = "overview"


class CachedMetricsAdapter(SqlSourceAdapter):
    id = "cached-metrics"
    source_type = SourceType.CACHED_METRICS
    name = "Cached Metrics"
    capabilities = frozenset({Capability.FILTERING})
    probe_model = MetricSnapshot

    avg_latency_ms = 10.0
    throughput_per_sec = 50_000.0
    reliability = 0.98

    async def _query(self, session: AsyncSession, config: SourceConfig) -> list[Record]:
        snapshot = await record_store.get_latest_metric(
            session,
            seller_id=config.seller_id,
            metric_type=config.metric_type or DEFAULT_METRIC_TYPE,
        )
        return [snapshot] if snapshot is not None else []
