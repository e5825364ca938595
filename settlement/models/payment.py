from decimal import Decimal
from sqlalchemy import String, DateTime, Numeric, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from settlement.db.session import Base

class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), index=True)
    stripe_payment_intent_id: Mapped[str] = mapped_column(String(255), unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    status: Mapped[str] = mapped_column(String(20), default="pending")          # pending, paid, failed, refunded
    payment_type: Mapped[str] = mapped_column(String(30), default="direct")     # direct, platform_collected
    processing_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))                 # owed to the guide after fees
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    # platform_collected only: weekly payout bookkeeping
    tour_guide_user_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    payout_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    payout_completed: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
