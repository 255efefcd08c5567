"""
sellerlens/sources/aggregate_store.py

Daily pre-aggregated buckets from ``events_agg_daily``.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from sellerlens.models.sql.daily_aggregate import DailyAggregate
from sellerlens.query.plan import Capability, SourceConfig, SourceType
from sellerlens.sources.base import Record, SqlSourceAdapter
from sellerlens.storage import record_store


class AggregateStoreAdapter(SqlSourceAdapter):
    id = "aggregate-store"
    source_type = SourceType.AGGREGATE_STORE
    name = "Aggregate Store (daily buckets)"
    capabilities = frozenset(
        {Capability.TIME_RANGE, Capability.FILTERING, Capability.AGGREGATION}
    )
    probe_model = DailyAggregate

    avg_latency_ms = 100.0
    throughput_per_sec = 5_000.0
    reliability = 0.995

    async def _query(self, session: AsyncSession, config: SourceConfig) -> list[Record]:
        return await record_store.list_daily_aggregates(
            session,
            seller_id=config.seller_id,
            start_ms=config.time_window.start,
            end_ms=config.time_window.end,
            event_type=config.metric_type,
        )
