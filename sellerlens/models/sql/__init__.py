from sellerlens.models.sql.daily_aggregate import DailyAggregate
from sellerlens.models.sql.historical_event import HistoricalEvent
from sellerlens.models.sql.metric_snapshot import MetricSnapshot
from sellerlens.models.sql.query_execution import QueryExecutionNodeRow, QueryExecutionRow
from sellerlens.models.sql.seller_event import SellerEvent

__all__ = [
    "DailyAggregate",
    "HistoricalEvent",
    "MetricSnapshot",
    "QueryExecutionNodeRow",
    "QueryExecutionRow",
    "SellerEvent",
]
