import uuid
from datetime import date

from sqlalchemy import Date, Float, Integer, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from sellerlens.database.postgres import Base


class DailyAggregate(Base):
    """Pre-aggregated per-day event buckets read by the aggregate-store source."""

    __tablename__ = "events_agg_daily"
    __table_args__ = (
        UniqueConstraint("seller_id", "day", "type", name="uq_events_agg_daily_bucket"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    day: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    total_value: Mapped[float] = mapped_column(Float, default=0.0, server_default=text("0"))

    def __repr__(self) -> str:
        return f"<DailyAggregate(seller_id={self.seller_id}, day={self.day}, type={self.type})>"
