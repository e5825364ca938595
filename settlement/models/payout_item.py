from decimal import Decimal
from sqlalchemy import String, DateTime, Numeric
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from settlement.db.session import Base

class PayoutItem(Base):
    __tablename__ = "payout_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    payout_id: Mapped[str] = mapped_column(String(36), index=True)
    # unique: a payment is settled by exactly one payout
    payment_id: Mapped[str] = mapped_column(String(36), unique=True)

    # snapshot at aggregation time, survives later edits of the payment row
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
