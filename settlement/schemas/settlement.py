from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class ReverseTransferIn(BaseModel):
    # None reverses the whole transfer
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: str = ""


class RefundIn(BaseModel):
    # None: refund what the tour's cancellation policy allows
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: str = "requested_by_customer"
    cancelledBy: str = Field(default="customer", pattern="^(customer|guide)$")


class ScheduleTransferOut(BaseModel):
    bookingId: str
    transferScheduledFor: str
    reason: str
    immediate: bool
