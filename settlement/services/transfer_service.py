from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from settlement.core.errors import ConfigurationError, ProcessorError, SettlementError
from settlement.core.timeutil import ensure_utc
from settlement.models.booking import Booking
from settlement.models.tour import Tour
from settlement.services.money import normalize_currency, validate_amount
from settlement.services.processor import PaymentProcessor, TransferMetadata
from settlement.services.transfer_schedule import describe_transfer_status

logger = logging.getLogger(__name__)


def transfer_idempotency_key(booking_id: str) -> str:
    return f"transfer_{booking_id}"


def create_transfer_to_guide(
    processor: PaymentProcessor,
    amount: Decimal,
    currency: str,
    destination_account_id: str | None,
    metadata: TransferMetadata,
) -> str:
    """Move one booking's money to the guide's connected account. Returns the processor transfer id.

    Exactly one processor call, no retry here. A failed or timed-out call raises and
    the booking stays eligible; the deterministic idempotency key makes the next
    sweep's call a no-op on the processor side if this one actually went through.
    """
    if not destination_account_id:
        raise ConfigurationError("guide has no Stripe account connected")
    amount = validate_amount(amount)
    currency = normalize_currency(currency)

    try:
        transfer_id = processor.create_transfer(
            amount, currency, destination_account_id, metadata,
            idempotency_key=transfer_idempotency_key(metadata.booking_id),
        )
    except SettlementError:
        raise
    except Exception as e:
        # anything the adapter did not classify is treated as transient
        raise ProcessorError(f"transfer call failed: {e}") from e

    if not transfer_id:
        raise ProcessorError("processor returned no transfer id")
    logger.info("transfer %s: %s %s to %s", transfer_id, amount, currency, destination_account_id,
                extra={"booking_id": metadata.booking_id, "transfer_id": transfer_id})
    return transfer_id


def transfer_overview_for_guide(db: Session, user_id: str, now: datetime) -> dict:
    """Paid bookings of a guide's tours split into pending, completed and failed transfers."""
    rows = (
        db.query(Booking, Tour)
        .join(Tour, Booking.tour_id == Tour.id)
        .filter(Tour.user_id == user_id, Booking.payment_status == "paid")
        .all()
    )

    def _iso(value):
        value = ensure_utc(value)
        return value.isoformat() if value else None

    pending, completed, failed = [], [], []
    for b, t in rows:
        base = {
            "bookingId": b.id,
            "bookingReference": b.booking_reference,
            "totalAmount": str(b.total_amount),
            "tourId": t.id,
            "tourName": t.name,
            "statusMessage": describe_transfer_status(b, now)["text"],
        }
        if b.transfer_status == "failed":
            failed.append({**base, "transferNotes": b.transfer_notes})
        elif b.transfer_id and b.transfer_status == "completed":
            completed.append({**base, "transferId": b.transfer_id, "transferProcessedAt": _iso(b.transfer_processed_at)})
        elif not b.transfer_id and b.transfer_scheduled_for:
            pending.append({**base, "transferScheduledFor": _iso(b.transfer_scheduled_for), "transferStatus": b.transfer_status})

    pending.sort(key=lambda x: x["transferScheduledFor"] or "")
    completed.sort(key=lambda x: x["transferProcessedAt"] or "", reverse=True)
    return {
        "pending": pending,
        "completed": completed,
        "failed": failed,
        "stats": {
            "pendingAmount": str(sum((Decimal(p["totalAmount"]) for p in pending), Decimal("0"))),
            "completedAmount": str(sum((Decimal(c["totalAmount"]) for c in completed), Decimal("0"))),
            "pendingCount": len(pending),
            "completedCount": len(completed),
            "failedCount": len(failed),
        },
    }
