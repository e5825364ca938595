import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement.api.deps import JobContextFactory, get_job_context_factory, require_roles
from settlement.core.errors import ConfigurationError, ProcessorError, SettlementValidationError
from settlement.core.timeutil import utcnow
from settlement.db.session import get_db
from settlement.models.booking import Booking
from settlement.models.user import User
from settlement.schemas.settlement import RefundIn, ReverseTransferIn, ScheduleTransferOut
from settlement.services.audit_service import log_audit
from settlement.services.reversal_service import process_smart_refund, reverse_booking_transfer
from settlement.services.transfer_schedule import schedule_booking_transfer
from settlement.services.transfer_service import transfer_overview_for_guide

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transfers"])


def _booking_or_404(db: Session, booking_id: str) -> Booking:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@router.get("/transfers")
def my_transfers(db: Session = Depends(get_db), user: User = Depends(require_roles("guide", "admin"))):
    return transfer_overview_for_guide(db, user.id, utcnow())


# -------------------------
# OPS: manual interventions
# -------------------------
@router.post("/ops/bookings/{booking_id}/schedule-transfer", response_model=ScheduleTransferOut)
def schedule_transfer(booking_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles("ops", "admin"))):
    booking = _booking_or_404(db, booking_id)
    try:
        schedule = schedule_booking_transfer(db, booking, actor_user_id=user.id)
    except (SettlementValidationError, ConfigurationError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ScheduleTransferOut(
        bookingId=booking.id,
        transferScheduledFor=schedule.transfer_time.isoformat(),
        reason=schedule.reason,
        immediate=schedule.immediate,
    )


@router.post("/ops/transfers/{booking_id}/retry")
def release_for_retry(booking_id: str, db: Session = Depends(get_db), user: User = Depends(require_roles("ops", "admin", "finance"))):
    booking = _booking_or_404(db, booking_id)
    if booking.transfer_id:
        raise HTTPException(status_code=409, detail="Transfer already completed")
    if booking.transfer_status == "processing":
        raise HTTPException(status_code=409, detail="Transfer in progress")
    booking.transfer_needs_review = False
    booking.transfer_status = None
    log_audit(db, user.id, "transfer.released", "booking", booking.id, {"previousNotes": booking.transfer_notes})
    db.commit()
    return {"ok": True, "bookingId": booking.id}


@router.post("/ops/transfers/{booking_id}/reverse")
def reverse(
    booking_id: str,
    body: ReverseTransferIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin", "finance")),
    context_factory: JobContextFactory = Depends(get_job_context_factory),
):
    booking = _booking_or_404(db, booking_id)
    try:
        ctx = context_factory(db, user.id)
        result = reverse_booking_transfer(db, ctx, booking, amount=body.amount, reason=body.reason, actor_user_id=user.id)
    except SettlementValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ProcessorError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.as_dict()


@router.post("/ops/bookings/{booking_id}/refund")
def refund(
    booking_id: str,
    body: RefundIn,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("admin", "finance")),
    context_factory: JobContextFactory = Depends(get_job_context_factory),
):
    booking = _booking_or_404(db, booking_id)
    try:
        ctx = context_factory(db, user.id)
        result = process_smart_refund(
            db, ctx, booking, amount=body.amount, reason=body.reason,
            cancelled_by=body.cancelledBy, actor_user_id=user.id,
        )
    except SettlementValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ProcessorError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.as_dict()
