"""
tests/unit/test_record_store.py

Unit tests for sellerlens.storage.record_store.

All tests use an AsyncMock SQLAlchemy session; the execute() result is
configured per test to simulate ORM rows.

Coverage
--------
  - list_recent_events: newest rows fetched, returned oldest-first as dicts
  - list_daily_aggregates: day rendered ISO, counts and totals mapped
  - get_latest_metric: found → dict; not found → None
  - list_historical_events: datetime timestamps converted to epoch ms
  - epoch helpers
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from sellerlens.storage.record_store import (
    epoch_ms_to_date,
    epoch_ms_to_datetime,
    get_latest_metric,
    list_daily_aggregates,
    list_historical_events,
    list_recent_events,
)


def _session_returning_rows(rows: list) -> AsyncMock:
    result = MagicMock()
    result.scalars.return_value.all.return_value = rows
    session = AsyncMock()
    session.execute.return_value = result
    return session


def _session_returning_one(row) -> AsyncMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = row
    session = AsyncMock()
    session.execute.return_value = result
    return session


class TestRecentEvents:
    @pytest.mark.asyncio
    async def test_oldest_first(self):
        rows = [
            SimpleNamespace(id=2, seller_id="s", timestamp=2000, type="SALE", value=Decimal("5.5")),
            SimpleNamespace(id=1, seller_id="s", timestamp=1000, type="SALE", value=Decimal("3")),
        ]
        session = _session_returning_rows(rows)

        records = await list_recent_events(session, seller_id="s", start_ms=0, end_ms=5000, limit=2)

        assert [r["timestamp"] for r in records] == [1000, 2000]
        assert records[0] == {"id": "1", "seller_id": "s", "timestamp": 1000, "type": "SALE", "value": 3.0}
        session.execute.assert_awaited_once()


class TestDailyAggregates:
    @pytest.mark.asyncio
    async def test_mapping(self):
        rows = [SimpleNamespace(seller_id="s", day=date(2024, 1, 2), type="SALE", event_count=4, total_value=80)]
        records = await list_daily_aggregates(
            _session_returning_rows(rows), seller_id="s", start_ms=0, end_ms=1, event_type="SALE"
        )
        assert records == [{"seller_id": "s", "day": "2024-01-02", "type": "SALE", "count": 4, "value": 80.0}]


class TestLatestMetric:
    @pytest.mark.asyncio
    async def test_found(self):
        row = SimpleNamespace(
            seller_id="s", metric_type="revenue", data={"total": 1},
            last_computed=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        snapshot = await get_latest_metric(_session_returning_one(row), seller_id="s", metric_type="revenue")
        assert snapshot["data"] == {"total": 1}
        assert snapshot["last_computed"].startswith("2024-01-01")

    @pytest.mark.asyncio
    async def test_missing(self):
        assert await get_latest_metric(_session_returning_one(None), seller_id="s", metric_type="x") is None


class TestHistoricalEvents:
    @pytest.mark.asyncio
    async def test_timestamp_to_epoch_ms(self):
        ts = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        rows = [SimpleNamespace(id=9, seller_id="s", timestamp=ts, type="REFUND", value=-2)]
        records = await list_historical_events(_session_returning_rows(rows), seller_id="s", start_ms=0, end_ms=1)
        assert records[0]["timestamp"] == 1_700_000_000_000
        assert records[0]["value"] == -2.0


def test_epoch_helpers():
    assert epoch_ms_to_datetime(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert epoch_ms_to_date(86_400_000) == date(1970, 1, 2)
