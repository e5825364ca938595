from decimal import Decimal
from sqlalchemy import String, DateTime, Numeric, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from settlement.db.session import Base

class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("tour_guide_user_id", "period_start", "period_end", name="uq_payout_guide_period"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tour_guide_user_id: Mapped[str] = mapped_column(String(36), index=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    payout_currency: Mapped[str] = mapped_column(String(3))
    stripe_payout_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, processing, completed, failed

    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
