import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from sellerlens.database.postgres import Base


class MetricSnapshot(Base):
    """Most recently computed metric per seller and metric type."""

    __tablename__ = "metrics_cache"
    __table_args__ = (
        UniqueConstraint("seller_id", "metric_type", name="uq_metrics_cache_seller_metric"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    metric_type: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    last_computed: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=text("now()"),
        index=True,
    )
    ttl: Mapped[int] = mapped_column(
        Integer, default=10, server_default=text("10"), comment="Freshness hint in seconds"
    )

    def __repr__(self) -> str:
        return f"<MetricSnapshot(seller_id={self.seller_id}, metric_type={self.metric_type})>"
