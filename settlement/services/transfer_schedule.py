"""
When may a booking's money leave the platform account?

Funds are held until the tour's refund window has closed, so a late
cancellation never needs a transfer reversal. The time is computed once when
the booking is confirmed and stored on ``Booking.transfer_scheduled_for``; the
hourly sweep only compares it with the clock.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import math

from sqlalchemy.orm import Session

from settlement.core.errors import ConfigurationError, SettlementValidationError
from settlement.core.timeutil import ensure_utc, utcnow
from settlement.models.booking import Booking
from settlement.models.time_slot import TimeSlot
from settlement.models.tour import Tour
from settlement.services.audit_service import log_audit, WORKER_ACTOR
from settlement.services.cancellation_policies import NON_REFUNDABLE, get_max_refund_hours

logger = logging.getLogger(__name__)

# Lead time added to "now" so the transfer lands in the next sweep instead of racing the current one
SWEEP_BUFFER = timedelta(minutes=2)
# Wait this long after the refund window closes
WINDOW_MARGIN = timedelta(hours=1)
# Tour counts as delivered this long after its scheduled end
COMPLETION_BUFFER = timedelta(minutes=30)
DEFAULT_DURATION_MINUTES = 120


@dataclass(frozen=True)
class TransferSchedule:
    transfer_time: datetime
    reason: str
    immediate: bool


def calculate_transfer_time(tour_start_time: datetime, policy_id: str | None, now: datetime | None = None) -> datetime:
    now = ensure_utc(now) or utcnow()
    if (policy_id or "").strip() == NON_REFUNDABLE:
        return now + SWEEP_BUFFER

    hours = get_max_refund_hours(policy_id)
    transfer_time = ensure_utc(tour_start_time) - (timedelta(hours=hours) + WINDOW_MARGIN)
    if transfer_time < now:
        return now + SWEEP_BUFFER
    return transfer_time


def calculate_tour_completion_time(tour_start_time: datetime, duration_minutes: int | None) -> datetime:
    minutes = duration_minutes if duration_minutes is not None else DEFAULT_DURATION_MINUTES
    return ensure_utc(tour_start_time) + timedelta(minutes=minutes) + COMPLETION_BUFFER


def get_optimal_transfer_time(
    tour_start_time: datetime,
    duration_minutes: int | None,
    policy_id: str | None,
    booking_status: str = "confirmed",
    now: datetime | None = None,
) -> TransferSchedule:
    now = ensure_utc(now) or utcnow()
    completion_time = calculate_tour_completion_time(tour_start_time, duration_minutes)

    if booking_status == "completed" and now >= completion_time:
        return TransferSchedule(now + SWEEP_BUFFER, "Tour completed - service delivered", True)

    transfer_time = calculate_transfer_time(tour_start_time, policy_id, now=now)
    if (policy_id or "").strip() == NON_REFUNDABLE:
        reason = "Non-refundable booking"
    elif transfer_time == now + SWEEP_BUFFER:
        reason = "Refund window already closed"
    else:
        reason = "Waiting for refund window to close"
    return TransferSchedule(transfer_time, reason, False)


def schedule_booking_transfer(db: Session, booking: Booking, now: datetime | None = None, actor_user_id: str = WORKER_ACTOR) -> TransferSchedule:
    """Compute and store ``transfer_scheduled_for`` for a confirmed booking.

    Called on confirmation. Calling it again re-evaluates the schedule, e.g. after
    the tour was moved to another time slot.
    """
    if booking.transfer_id:
        raise SettlementValidationError("transfer already completed for this booking")
    if booking.status not in ("confirmed", "completed"):
        raise SettlementValidationError(f"booking status is {booking.status}, transfer is only scheduled for confirmed bookings")

    tour = db.get(Tour, booking.tour_id)
    slot = db.get(TimeSlot, booking.time_slot_id)
    if not tour or not slot:
        raise ConfigurationError("booking has no tour or time slot")

    schedule = get_optimal_transfer_time(
        slot.start_time, tour.duration_minutes, tour.cancellation_policy_id, booking.status, now=now,
    )
    booking.transfer_scheduled_for = schedule.transfer_time
    log_audit(db, actor_user_id, "transfer.scheduled", "booking", booking.id, {
        "transferScheduledFor": schedule.transfer_time.isoformat(),
        "reason": schedule.reason,
        "immediate": schedule.immediate,
        "policy": tour.cancellation_policy_id or "flexible",
    })
    db.commit()
    logger.info("transfer for %s scheduled at %s (%s)", booking.booking_reference, schedule.transfer_time.isoformat(), schedule.reason,
                extra={"booking_id": booking.id})
    return schedule


def is_ready_for_transfer(booking: Booking, now: datetime | None = None) -> bool:
    now = ensure_utc(now) or utcnow()
    if booking.transfer_id:
        return False
    if booking.payment_status != "paid" or booking.status != "confirmed":
        return False
    if booking.transfer_needs_review:
        return False
    scheduled = ensure_utc(booking.transfer_scheduled_for)
    return scheduled is not None and scheduled <= now


def describe_transfer_status(booking: Booking, now: datetime | None = None) -> dict:
    """Guide-facing status line for a booking's transfer."""
    now = ensure_utc(now) or utcnow()
    if booking.transfer_id and booking.transfer_status == "completed":
        return {"text": "Transferred to your account", "state": "success"}
    if booking.transfer_status == "reversed":
        return {"text": "Transfer reversed for a customer refund", "state": "reversed"}
    if booking.transfer_status == "failed":
        return {"text": "Transfer failed - contact support", "state": "error"}

    scheduled = ensure_utc(booking.transfer_scheduled_for)
    if scheduled and not booking.transfer_id:
        hours_until = (scheduled - now).total_seconds() / 3600
        if hours_until > 24:
            days = math.ceil(hours_until / 24)
            return {"text": f"Transfer in {days} day{'s' if days != 1 else ''}", "state": "pending"}
        if hours_until > 0:
            hours = math.ceil(hours_until)
            return {"text": f"Transfer in {hours} hour{'s' if hours != 1 else ''}", "state": "pending"}
        return {"text": "Processing transfer...", "state": "processing"}

    if booking.status == "cancelled":
        return {"text": "Booking cancelled", "state": "cancelled"}
    return {"text": "Payment received", "state": "info"}
