"""
Transfer reversals and customer refunds.

Transfers are scheduled after the refund window closes, so a refund normally
comes straight from the platform balance. Only when the guide has already been
paid is the transfer reversed first. Neither path changes ``payment_status`` of
its own accord; ``process_smart_refund`` is the caller that does.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from settlement.core.errors import ConfigurationError, ProcessorError, SettlementError, SettlementValidationError
from settlement.models.booking import Booking
from settlement.models.payment import Payment
from settlement.models.time_slot import TimeSlot
from settlement.models.tour import Tour
from settlement.models.user import User
from settlement.services.audit_service import audit_entries, log_audit
from settlement.services.cancellation_policies import calculate_refund
from settlement.services.job_context import JobContext
from settlement.services.money import normalize_currency, validate_amount
from settlement.services.processor import PaymentProcessor, RefundMetadata, ReversalMetadata

logger = logging.getLogger(__name__)

PLATFORM_REFUND = "platform_refund"
REVERSAL_THEN_REFUND = "transfer_reversal_then_refund"


@dataclass(frozen=True)
class ReversalResult:
    reversal_id: str
    transfer_id: str
    amount: Decimal | None
    reversed_at: datetime

    def as_dict(self) -> dict:
        return {
            "reversalId": self.reversal_id,
            "transferId": self.transfer_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "reversedAt": self.reversed_at.isoformat(),
        }


@dataclass(frozen=True)
class RefundResult:
    method: str
    refund_id: str
    amount: Decimal
    currency: str
    reversal_id: str | None = None

    def as_dict(self) -> dict:
        return {
            "success": True,
            "method": self.method,
            "refundId": self.refund_id,
            "transferReversalId": self.reversal_id,
            "amount": str(self.amount),
            "currency": self.currency,
        }


def reverse_transfer(
    processor: PaymentProcessor,
    transfer_id: str,
    now: datetime,
    amount: Decimal | None = None,
    currency: str | None = None,
    metadata: ReversalMetadata | None = None,
    idempotency_key: str | None = None,
) -> ReversalResult:
    """Pull a completed transfer (or part of it) back to the platform account."""
    if not transfer_id:
        raise ConfigurationError("no transfer to reverse")
    if amount is not None:
        amount = validate_amount(amount)
        currency = normalize_currency(currency)
    try:
        reversal_id = processor.create_reversal(
            transfer_id, amount=amount, currency=currency, metadata=metadata, idempotency_key=idempotency_key,
        )
    except SettlementError:
        raise
    except Exception as e:
        raise ProcessorError(f"reversal call failed: {e}") from e
    logger.warning("transfer %s reversed by %s", transfer_id, reversal_id, extra={"transfer_id": transfer_id})
    return ReversalResult(reversal_id, transfer_id, amount, now)


def reversal_idempotency_key(booking_id: str) -> str:
    return f"reversal_{booking_id}"


def _guide_for(db: Session, booking: Booking) -> tuple[Tour, User]:
    tour = db.get(Tour, booking.tour_id)
    guide = db.get(User, tour.user_id) if tour else None
    if not tour or not guide:
        raise ConfigurationError("booking has no tour or guide")
    return tour, guide


def reverse_booking_transfer(db: Session, ctx: JobContext, booking: Booking, amount: Decimal | None = None,
                             reason: str = "", actor_user_id: str | None = None) -> ReversalResult:
    if not booking.transfer_id or booking.transfer_status != "completed":
        raise SettlementValidationError("booking has no completed transfer")
    _, guide = _guide_for(db, booking)
    actor = actor_user_id or ctx.actor
    now = ctx.now()
    # one key per manual reversal; a retry after a failed call reuses it
    done = sum(1 for e in audit_entries(db, "booking", booking.id) if e.action == "transfer.reversed")

    result = reverse_transfer(
        ctx.processor, booking.transfer_id, now,
        amount=amount, currency=guide.currency if amount is not None else None,
        metadata=ReversalMetadata(booking_id=booking.id, reason=reason or "manual", requested_by=actor),
        idempotency_key=f"{reversal_idempotency_key(booking.id)}_manual_{done + 1}",
    )
    what = f"{guide.currency}{result.amount}" if result.amount is not None else "full amount"
    booking.transfer_notes = f"{booking.transfer_notes or ''}\nReversed {what}: {result.reversal_id}".strip()
    log_audit(db, actor, "transfer.reversed", "booking", booking.id, {**result.as_dict(), "reason": reason})
    db.commit()
    return result


def process_smart_refund(
    db: Session,
    ctx: JobContext,
    booking: Booking,
    amount: Decimal | None = None,
    reason: str = "requested_by_customer",
    cancelled_by: str = "customer",
    actor_user_id: str | None = None,
) -> RefundResult:
    """Refund a booking's customer and cancel the booking.

    Without an explicit amount the refund follows the tour's cancellation policy.
    Funds still on the platform are refunded directly; funds already with the
    guide are reversed first, then refunded.
    """
    if booking.payment_status != "paid":
        raise SettlementValidationError(f"booking payment status is {booking.payment_status}, nothing to refund")
    if not booking.payment_id:
        raise ConfigurationError("booking has no payment reference")
    if booking.transfer_status == "processing":
        raise SettlementValidationError("transfer in progress, retry once the sweep has finished")

    tour, guide = _guide_for(db, booking)
    actor = actor_user_id or ctx.actor
    now = ctx.now()
    currency = normalize_currency(guide.currency)

    if amount is None:
        slot = db.get(TimeSlot, booking.time_slot_id)
        if not slot:
            raise ConfigurationError("booking has no time slot")
        calc = calculate_refund(booking.total_amount, slot.start_time, tour.cancellation_policy_id, cancelled_by, now=now)
        if not calc.is_refundable:
            raise SettlementValidationError(f"not refundable: {calc.rule}")
        amount = calc.refund_amount
    amount = validate_amount(amount)
    if amount > Decimal(str(booking.total_amount)):
        raise SettlementValidationError("refund exceeds the booking total")

    # stops the sweep from paying the guide while the refund is in flight
    booking.status = "cancelled"
    db.commit()

    transferred = bool(booking.transfer_id) and booking.transfer_status in ("completed", "reversed")
    # set when an earlier attempt reversed the transfer but the refund itself failed
    reversal_id = booking.transfer_reversal_id
    try:
        if transferred and not reversal_id:
            reversal = reverse_transfer(
                ctx.processor, booking.transfer_id, now, amount=amount, currency=currency,
                metadata=ReversalMetadata(booking_id=booking.id, reason="refund_required", requested_by=actor),
                idempotency_key=reversal_idempotency_key(booking.id),
            )
            reversal_id = reversal.reversal_id
            booking.transfer_reversal_id = reversal_id
            booking.transfer_status = "reversed"
            log_audit(db, actor, "transfer.reversed", "booking", booking.id, reversal.as_dict())
            db.commit()
        refund_id = ctx.processor.create_refund(
            booking.payment_id, amount, currency, reason,
            RefundMetadata(
                booking_id=booking.id, booking_reference=booking.booking_reference,
                reason=reason, requested_by=actor, reversal_id=reversal_id,
            ),
            idempotency_key=f"refund_{booking.id}",
        )
    except Exception as e:
        db.rollback()
        method = REVERSAL_THEN_REFUND if transferred else PLATFORM_REFUND
        note = f"Refund failed ({method}): {e}"
        if reversal_id:
            note += f". Transfer already reversed ({reversal_id}), refund still owed to the customer"
        booking.transfer_notes = f"{booking.transfer_notes or ''}\n{note}".strip()
        log_audit(db, actor, "refund.failed", "booking", booking.id, {"error": str(e), "method": method, "reversalId": reversal_id})
        db.commit()
        logger.error("refund for %s failed: %s", booking.booking_reference, e, extra={"booking_id": booking.id})
        try:
            ctx.send_alert(f"[settlement] refund failed for {booking.booking_reference}", note)
        except Exception:
            logger.exception("could not queue refund failure alert")
        if isinstance(e, SettlementError):
            raise
        raise ProcessorError(str(e)) from e

    method = REVERSAL_THEN_REFUND if transferred else PLATFORM_REFUND
    booking.payment_status = "refunded"
    payment = db.query(Payment).filter(Payment.stripe_payment_intent_id == booking.payment_id).first()
    if payment:
        payment.refund_amount = amount
        payment.status = "refunded"
    log_audit(db, actor, "refund.completed", "booking", booking.id, {
        "refundId": refund_id, "method": method, "amount": str(amount), "currency": currency,
        "reversalId": reversal_id, "cancelledBy": cancelled_by,
    })
    db.commit()
    logger.info("refunded %s %s for %s via %s", amount, currency, booking.booking_reference, method, extra={"booking_id": booking.id})
    return RefundResult(method, refund_id, amount, currency, reversal_id)
