"""
sellerlens/sources/cold_store.py

Archived events evicted from the ring buffer (``ring_buffer_history``).
Slow, but unbounded in time.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from sellerlens.models.sql.historical_event import HistoricalEvent
from sellerlens.query.plan import Capability, SourceConfig, SourceType
from sellerlens.sources.base import Record, SqlSourceAdapter
from sellerlens.storage import record_store


class HistoricalColdStoreAdapter(SqlSourceAdapter):
    id = "historical-cold-store"
    source_type = SourceType.HISTORICAL_COLD_STORE
    name = "Historical Cold Store"
    capabilities = frozenset({Capability.TIME_RANGE, Capability.FILTERING})
    probe_model = HistoricalEvent

    avg_latency_ms = 500.0
    throughput_per_sec = 1_000.0
    reliability = 0.99

    async def _query(self, session: AsyncSession, config: SourceConfig) -> list[Record]:
        return await record_store.list_historical_events(
            session,
            seller_id=config.seller_id,
            start_ms=config.time_window.start,
            end_ms=config.time_window.end,
            event_type=config.metric_type,
        )
