import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Float, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from sellerlens.database.postgres import Base


class SellerEvent(Base):
    """Hot event stream read by the ring-buffer source (written by ingestion)."""

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_seller_timestamp", "seller_id", "timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="Event time (epoch milliseconds)"
    )
    type: Mapped[str] = mapped_column(
        String(32), nullable=False, index=True,
        comment="SALE, CLICK, VIEW, CHECKOUT_STARTED, PAYMENT_SUCCEEDED",
    )
    value: Mapped[float] = mapped_column(Float, default=0.0, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=text("now()"),
    )

    def __repr__(self) -> str:
        return f"<SellerEvent(seller_id={self.seller_id}, type={self.type}, ts={self.timestamp})>"
