import logging

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement.api.deps import JobContextFactory, check_shared_secret, get_job_context_factory, require_roles
from settlement.core.config import settings
from settlement.core.errors import SettlementError
from settlement.core.logging_setup import start_job_run
from settlement.core.timeutil import utcnow
from settlement.db.session import get_db
from settlement.models.user import User
from settlement.services.audit_service import CRON_ACTOR
from settlement.services.payout_service import payout_status_for_guide, process_weekly_payouts

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payouts"])


@router.post("/payouts/process")
def process_payouts(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    context_factory: JobContextFactory = Depends(get_job_context_factory),
):
    denied = check_shared_secret(authorization, settings.PAYOUT_PROCESSING_TOKEN, "PAYOUT_PROCESSING_TOKEN")
    if denied is not None:
        # no distinction between a missing and a wrong token on this trigger
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    start_job_run("weekly-payouts")
    try:
        ctx = context_factory(db, CRON_ACTOR)
        summary = process_weekly_payouts(db, ctx)
    except (SettlementError, SQLAlchemyError) as e:
        db.rollback()
        logger.exception("weekly payouts aborted")
        return JSONResponse(status_code=500, content={"error": "Failed to process payouts", "message": str(e)})
    summary["message"] = f"Processed {summary['processedRecipients']} tour guides"
    return summary


@router.get("/payouts/status")
def payout_status(db: Session = Depends(get_db), user: User = Depends(require_roles("guide", "admin"))):
    return payout_status_for_guide(db, user, utcnow())
