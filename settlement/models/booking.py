from decimal import Decimal
from sqlalchemy import String, DateTime, Numeric, Boolean, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from settlement.db.session import Base

class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_reference: Mapped[str] = mapped_column(String(100), unique=True, index=True)

    tour_id: Mapped[str] = mapped_column(String(36), index=True)
    time_slot_id: Mapped[str] = mapped_column(String(36), index=True)

    status: Mapped[str] = mapped_column(String(20), default="pending")          # pending, confirmed, cancelled, completed, no_show
    payment_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, paid, failed, refunded
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))               # guide's currency
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)  # Stripe PaymentIntent

    # Delayed transfer to the guide. transfer_id is written once and is the double-transfer guard.
    transfer_scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    transfer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    transfer_status: Mapped[str | None] = mapped_column(String(20), nullable=True)  # null, processing, completed, failed, reversed
    transfer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    transfer_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transfer_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Permanent failure (no destination account, bad amount): sweep leaves it alone until ops release it
    transfer_needs_review: Mapped[bool] = mapped_column(Boolean, default=False)
    # Reversal taken back for a customer refund; set once so a retried refund never reverses twice
    transfer_reversal_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
