"""
Hourly transfer sweep: release held booking funds to guides once the refund
window has passed.

Each booking is handled on its own; one failing booking never stops the batch.
A booking is claimed with a conditional UPDATE before any processor call, so
two overlapping sweeps cannot both transfer it.
"""
from datetime import datetime
import logging

from sqlalchemy import update, or_, and_
from sqlalchemy.orm import Session

from settlement.core.errors import ConfigurationError, SettlementValidationError, is_retryable
from settlement.core.timeutil import ensure_utc
from settlement.models.booking import Booking
from settlement.models.tour import Tour
from settlement.models.user import User
from settlement.services.audit_service import log_audit
from settlement.services.job_context import JobContext
from settlement.services.money import normalize_currency, validate_amount
from settlement.services.processor import TransferMetadata
from settlement.services.transfer_schedule import is_ready_for_transfer
from settlement.services.transfer_service import create_transfer_to_guide

logger = logging.getLogger(__name__)

DIAGNOSE_LIMIT = 50


def _eligible_filter(now: datetime, ctx: JobContext):
    stale_before = now - ctx.claim_ttl
    return and_(
        Booking.payment_status == "paid",
        Booking.status == "confirmed",
        Booking.transfer_id.is_(None),
        Booking.transfer_scheduled_for.isnot(None),
        Booking.transfer_scheduled_for <= now,
        Booking.transfer_needs_review.is_(False),
        or_(
            Booking.transfer_status.is_(None),
            Booking.transfer_status != "processing",
            Booking.transfer_claimed_at.is_(None),
            Booking.transfer_claimed_at < stale_before,
        ),
    )


def claim_booking(db: Session, booking_id: str, now: datetime, ctx: JobContext) -> bool:
    """Mark the booking ``processing`` if nobody else holds it. True when this run owns it."""
    stale_before = now - ctx.claim_ttl
    res = db.execute(
        update(Booking)
        .where(
            Booking.id == booking_id,
            Booking.transfer_id.is_(None),
            Booking.transfer_needs_review.is_(False),
            or_(
                Booking.transfer_status.is_(None),
                Booking.transfer_status != "processing",
                Booking.transfer_claimed_at.is_(None),
                Booking.transfer_claimed_at < stale_before,
            ),
        )
        .values(transfer_status="processing", transfer_claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def _mark_completed(db: Session, booking: Booking, guide: User, transfer_id: str, amount, currency: str, now: datetime, ctx: JobContext):
    booking.transfer_id = transfer_id
    booking.transfer_status = "completed"
    booking.transfer_processed_at = now
    booking.transfer_claimed_at = None
    booking.transfer_notes = f"Transferred {currency}{amount} to {guide.full_name or guide.email}"
    log_audit(db, ctx.actor, "transfer.completed", "booking", booking.id, {
        "transferId": transfer_id, "amount": str(amount), "currency": currency, "destination": guide.stripe_account_id,
    })
    db.commit()


def _mark_failed(db: Session, booking_id: str, error: Exception, now: datetime, ctx: JobContext):
    permanent = not is_retryable(error)
    booking = db.get(Booking, booking_id)
    if booking is None or booking.transfer_id:
        return
    booking.transfer_status = "failed"
    booking.transfer_claimed_at = None
    booking.transfer_notes = f"Transfer failed: {error}"
    booking.transfer_processed_at = now
    if permanent:
        booking.transfer_needs_review = True
    log_audit(db, ctx.actor, "transfer.failed", "booking", booking_id, {
        "error": str(error), "errorType": error.__class__.__name__, "permanent": permanent,
    })
    db.commit()


def run_transfer_sweep(db: Session, ctx: JobContext) -> dict:
    now = ctx.now()
    rows = (
        db.query(Booking, Tour, User)
        .join(Tour, Booking.tour_id == Tour.id)
        .join(User, Tour.user_id == User.id)
        .filter(_eligible_filter(now, ctx))
        .limit(ctx.transfer_batch_limit)
        .all()
    )
    logger.info("transfer sweep: %s bookings due", len(rows))

    results = []
    succeeded = failed = skipped = 0
    validation_failures = []

    for booking, tour, guide in rows:
        booking_id = booking.id
        reference = booking.booking_reference
        try:
            if not is_ready_for_transfer(booking, now):
                skipped += 1
                results.append({"bookingId": booking_id, "bookingReference": reference, "status": "skipped", "reason": "not ready"})
                continue
            if not guide.stripe_account_id:
                raise ConfigurationError("Tour guide has no Stripe account connected")
            if not booking.payment_id:
                raise ConfigurationError("Booking has no payment reference")
            amount = validate_amount(booking.total_amount)
            currency = normalize_currency(guide.currency)

            if not claim_booking(db, booking_id, now, ctx):
                skipped += 1
                results.append({"bookingId": booking_id, "bookingReference": reference, "status": "skipped", "reason": "claimed by another run"})
                continue

            metadata = TransferMetadata(
                booking_id=booking_id,
                booking_reference=reference,
                tour_id=tour.id,
                tour_guide_user_id=guide.id,
                payment_intent_id=booking.payment_id,
            )
            transfer_id = create_transfer_to_guide(ctx.processor, amount, currency, guide.stripe_account_id, metadata)
            _mark_completed(db, booking, guide, transfer_id, amount, currency, now, ctx)
            succeeded += 1
            results.append({"bookingId": booking_id, "bookingReference": reference, "status": "success", "transferId": transfer_id})
        except Exception as e:
            db.rollback()
            failed += 1
            logger.exception("transfer for %s failed", reference, extra={"booking_id": booking_id})
            _mark_failed(db, booking_id, e, now, ctx)
            if isinstance(e, SettlementValidationError):
                validation_failures.append(reference)
            results.append({
                "bookingId": booking_id,
                "bookingReference": reference,
                "status": "failed",
                "error": str(e),
                "retryable": is_retryable(e),
            })

    summary = {
        "success": True,
        "timestamp": now.isoformat(),
        "totalPending": len(rows),
        "succeeded": succeeded,
        "failed": failed,
        "skipped": skipped,
        "results": results,
    }
    logger.info("transfer sweep done: %s succeeded, %s failed, %s skipped", succeeded, failed, skipped)
    if failed:
        _alert_failures(ctx, summary, validation_failures)
    return summary


def _alert_failures(ctx: JobContext, summary: dict, validation_failures: list[str]):
    lines = [f"{r['bookingReference']}: {r['error']}" for r in summary["results"] if r["status"] == "failed"]
    if validation_failures:
        lines.append("")
        lines.append("Data problems (will not be retried): " + ", ".join(validation_failures))
    logger.error("transfer sweep had %s failures", summary["failed"])
    try:
        ctx.send_alert(f"[settlement] {summary['failed']} transfer(s) failed", "\n".join(lines))
    except Exception:
        # the alert must not turn a finished sweep into a failed request
        logger.exception("could not queue transfer failure alert")


def diagnose_transfers(db: Session, now: datetime, limit: int = DIAGNOSE_LIMIT) -> dict:
    """Explain why untransferred bookings are not being picked up by the sweep."""
    now = ensure_utc(now)
    rows = (
        db.query(Booking, Tour, User)
        .join(Tour, Booking.tour_id == Tour.id)
        .join(User, Tour.user_id == User.id)
        .filter(Booking.transfer_id.is_(None))
        .order_by(Booking.created_at.desc())
        .limit(limit)
        .all()
    )

    diagnostics = []
    reason_counts: dict[str, int] = {}
    for booking, tour, guide in rows:
        reasons = []
        if booking.payment_status != "paid":
            reasons.append(f"Payment status is '{booking.payment_status}' (needs 'paid')")
        if booking.status != "confirmed":
            reasons.append(f"Booking status is '{booking.status}' (needs 'confirmed')")
        scheduled = ensure_utc(booking.transfer_scheduled_for)
        minutes_until = None
        if scheduled is None:
            reasons.append("transferScheduledFor is not set (not scheduled)")
        else:
            minutes_until = round((scheduled - now).total_seconds() / 60)
            if scheduled > now:
                reasons.append(f"Scheduled for future (in {minutes_until} minutes)")
        if not guide.stripe_account_id:
            reasons.append("Guide has no Stripe account")
        if not booking.payment_id:
            reasons.append("No paymentId")
        if booking.transfer_needs_review:
            reasons.append("Flagged for manual review after a permanent failure")
        if booking.transfer_status == "processing":
            reasons.append("Claimed by a running sweep")

        ready = not reasons
        if ready:
            reasons = ["Ready for transfer"]
        for r in reasons:
            reason_counts[r] = reason_counts.get(r, 0) + 1
        diagnostics.append({
            "bookingId": booking.id,
            "bookingReference": booking.booking_reference,
            "tourName": tour.name,
            "status": booking.status,
            "paymentStatus": booking.payment_status,
            "transferStatus": booking.transfer_status,
            "transferScheduledFor": scheduled.isoformat() if scheduled else None,
            "minutesUntilTransfer": minutes_until,
            "hasPaymentId": bool(booking.payment_id),
            "hasStripeAccount": bool(guide.stripe_account_id),
            "readyForCron": ready,
            "reasons": reasons,
        })

    ready_count = sum(1 for d in diagnostics if d["readyForCron"])
    return {
        "timestamp": now.isoformat(),
        "summary": {"total": len(diagnostics), "readyForCron": ready_count, "notReady": len(diagnostics) - ready_count},
        "commonIssues": reason_counts,
        "bookings": diagnostics,
    }
