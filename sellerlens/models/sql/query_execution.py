from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, DateTime, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sellerlens.database.postgres import Base


class QueryExecutionRow(Base):
    """Append-only audit record of one plan run, written once at its terminal status."""

    __tablename__ = "query_execution"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    query_type: Mapped[str] = mapped_column(String(16), nullable=False)
    query_plan: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False,
        comment="COMPLETED, FAILED, CANCELLED, TIMEOUT",
    )

    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    result_data: Mapped[Any | None] = mapped_column(JSONB)
    error: Mapped[str | None] = mapped_column(Text)
    error_kind: Mapped[str | None] = mapped_column(String(32))

    nodes_executed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    total_latency_ms: Mapped[float | None] = mapped_column(Float)
    data_points_processed: Mapped[int] = mapped_column(
        BigInteger, default=0, server_default=text("0")
    )

    reproducibility_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    config_version: Mapped[str] = mapped_column(String(32), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=text("now()"),
    )

    nodes: Mapped[list["QueryExecutionNodeRow"]] = relationship(
        back_populates="execution",
        order_by="QueryExecutionNodeRow.sequence",
    )

    def __repr__(self) -> str:
        return f"<QueryExecutionRow(id={self.id}, status={self.status})>"


class QueryExecutionNodeRow(Base):
    """Append-only record of one node run within an execution."""

    __tablename__ = "query_execution_nodes"
    __table_args__ = (
        Index("idx_query_execution_nodes_execution", "execution_id", "node_type"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    # Deferred: node rows are appended while the run is in flight, before the
    # execution row is written in the same transaction.
    execution_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("query_execution.id", ondelete="CASCADE", deferrable=True, initially="DEFERRED"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    node_type: Mapped[str] = mapped_column(String(16), nullable=False)
    node_config: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    dependencies: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)

    status: Mapped[str] = mapped_column(String(16), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    latency_ms: Mapped[float | None] = mapped_column(Float)

    output_data: Mapped[Any | None] = mapped_column(JSONB)
    error: Mapped[str | None] = mapped_column(Text)

    execution: Mapped[QueryExecutionRow] = relationship(back_populates="nodes")

    def __repr__(self) -> str:
        return f"<QueryExecutionNodeRow(execution_id={self.execution_id}, node_id={self.node_id})>"
