"""
sellerlens/storage/record_store.py

Read-only query surface over the seller record tables.

Every function takes an AsyncSession and returns plain dict records so the
source adapters never leak ORM instances into the query DAG.  Nothing here
writes; ingestion owns these tables.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sellerlens.models.sql.daily_aggregate import DailyAggregate
from sellerlens.models.sql.historical_event import HistoricalEvent
from sellerlens.models.sql.metric_snapshot import MetricSnapshot
from sellerlens.models.sql.seller_event import SellerEvent


def epoch_ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def epoch_ms_to_date(value: int) -> date:
    return epoch_ms_to_datetime(value).date()


# ── Hot events ────────────────────────────────────────────────────────────────


async def list_recent_events(
    session: AsyncSession,
    *,
    seller_id: str,
    start_ms: int,
    end_ms: int,
    event_type: str | None = None,
    limit: int = 512,
) -> list[dict[str, Any]]:
    """
    Return the *limit* most recent events inside [start_ms, end_ms].

    The newest rows are selected first and then returned oldest-first so
    downstream operators always see a time-ordered series.
    """
    stmt = (
        select(SellerEvent)
        .where(SellerEvent.seller_id == seller_id)
        .where(SellerEvent.timestamp >= start_ms)
        .where(SellerEvent.timestamp <= end_ms)
    )
    if event_type is not None:
        stmt = stmt.where(SellerEvent.type == event_type)
    stmt = stmt.order_by(SellerEvent.timestamp.desc()).limit(limit)

    rows = (await session.execute(stmt)).scalars().all()
    return [
        {
            "id": str(row.id),
            "seller_id": row.seller_id,
            "timestamp": row.timestamp,
            "type": row.type,
            "value": float(row.value),
        }
        for row in reversed(rows)
    ]


# ── Daily aggregates ──────────────────────────────────────────────────────────


async def list_daily_aggregates(
    session: AsyncSession,
    *,
    seller_id: str,
    start_ms: int,
    end_ms: int,
    event_type: str | None = None,
) -> list[dict[str, Any]]:
    """Return daily buckets whose day falls inside the window, oldest first."""
    stmt = (
        select(DailyAggregate)
        .where(DailyAggregate.seller_id == seller_id)
        .where(DailyAggregate.day >= epoch_ms_to_date(start_ms))
        .where(DailyAggregate.day <= epoch_ms_to_date(end_ms))
    )
    if event_type is not None:
        stmt = stmt.where(DailyAggregate.type == event_type)
    stmt = stmt.order_by(DailyAggregate.day.asc(), DailyAggregate.type.asc())

    rows = (await session.execute(stmt)).scalars().all()
    return [
        {
            "seller_id": row.seller_id,
            "day": row.day.isoformat(),
            "type": row.type,
            "count": row.event_count,
            "value": float(row.total_value),
        }
        for row in rows
    ]


# ── Cached metrics ────────────────────────────────────────────────────────────


async def get_latest_metric(
    session: AsyncSession,
    *,
    seller_id: str,
    metric_type: str,
) -> dict[str, Any] | None:
    """Return the most recently computed metric snapshot, or None."""
    stmt = (
        select(MetricSnapshot)
        .where(MetricSnapshot.seller_id == seller_id)
        .where(MetricSnapshot.metric_type == metric_type)
        .order_by(MetricSnapshot.last_computed.desc())
        .limit(1)
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        return None
    return {
        "seller_id": row.seller_id,
        "metric_type": row.metric_type,
        "data": row.data,
        "last_computed": row.last_computed.isoformat(),
    }


# ── Cold history ──────────────────────────────────────────────────────────────


async def list_historical_events(
    session: AsyncSession,
    *,
    seller_id: str,
    start_ms: int,
    end_ms: int,
    event_type: str | None = None,
) -> list[dict[str, Any]]:
    """Return every archived event inside the window, oldest first."""
    stmt = (
        select(HistoricalEvent)
        .where(HistoricalEvent.seller_id == seller_id)
        .where(HistoricalEvent.timestamp >= epoch_ms_to_datetime(start_ms))
        .where(HistoricalEvent.timestamp <= epoch_ms_to_datetime(end_ms))
    )
    if event_type is not None:
        stmt = stmt.where(HistoricalEvent.type == event_type)
    stmt = stmt.order_by(HistoricalEvent.timestamp.asc())

    rows = (await session.execute(stmt)).scalars().all()
    return [
        {
            "id": str(row.id),
            "seller_id": row.seller_id,
            "timestamp": int(row.timestamp.timestamp() * 1000),
            "type": row.type,
            "value": float(row.value),
        }
        for row in rows
    ]


# ── Probes ────────────────────────────────────────────────────────────────────


async def probe_table(session: AsyncSession, model: type) -> None:
    """Issue a single-row read against *model*'s table; raises on failure."""
    await session.execute(select(model.id).limit(1))
