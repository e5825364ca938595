"""Payment processor boundary used by the transfer, payout and refund jobs.

Amounts cross this boundary in major units (Decimal); the adapter converts to
the processor's minor units. Metadata is a fixed record per call site so the
processor dashboard can always be reconciled back to our rows.
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Protocol


def _stringify(record) -> dict[str, str]:
    out = {}
    for key, value in asdict(record).items():
        if value is None:
            continue
        out[key] = value.isoformat() if isinstance(value, datetime) else str(value)
    return out


@dataclass(frozen=True)
class TransferMetadata:
    booking_id: str
    booking_reference: str
    tour_id: str
    tour_guide_user_id: str
    payment_intent_id: str

    def as_stripe_metadata(self) -> dict[str, str]:
        return {"kind": "booking_transfer", **_stringify(self)}


@dataclass(frozen=True)
class PayoutMetadata:
    payout_id: str
    tour_guide_user_id: str
    period_start: datetime
    period_end: datetime
    payment_count: int

    def as_stripe_metadata(self) -> dict[str, str]:
        return {"kind": "weekly_payout", **_stringify(self)}


@dataclass(frozen=True)
class ReversalMetadata:
    booking_id: str
    reason: str
    requested_by: str

    def as_stripe_metadata(self) -> dict[str, str]:
        return {"kind": "transfer_reversal", **_stringify(self)}


@dataclass(frozen=True)
class RefundMetadata:
    booking_id: str
    booking_reference: str
    reason: str
    requested_by: str
    reversal_id: str | None = None

    def as_stripe_metadata(self) -> dict[str, str]:
        return {"kind": "booking_refund", **_stringify(self)}


class PaymentProcessor(Protocol):
    def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination: str,
        metadata: TransferMetadata | PayoutMetadata,
        idempotency_key: str,
    ) -> str: ...

    def create_reversal(
        self,
        transfer_id: str,
        amount: Decimal | None = None,
        currency: str | None = None,
        metadata: ReversalMetadata | None = None,
        idempotency_key: str | None = None,
    ) -> str: ...

    def create_refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        currency: str,
        reason: str,
        metadata: RefundMetadata,
        idempotency_key: str | None = None,
    ) -> str: ...
