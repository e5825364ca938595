import logging

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement.api.deps import JobContextFactory, check_shared_secret, get_job_context_factory
from settlement.core.config import settings
from settlement.core.errors import SettlementError
from settlement.core.logging_setup import start_job_run
from settlement.core.timeutil import utcnow
from settlement.db.session import get_db
from settlement.services.audit_service import CRON_ACTOR
from settlement.services.sweep_service import diagnose_transfers, run_transfer_sweep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cron"])


@router.get("/cron/process-transfers")
def process_transfers(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    context_factory: JobContextFactory = Depends(get_job_context_factory),
):
    denied = check_shared_secret(authorization, settings.CRON_SECRET, "CRON_SECRET")
    if denied is not None:
        return denied

    start_job_run("transfer-sweep")
    try:
        ctx = context_factory(db, CRON_ACTOR)
        return run_transfer_sweep(db, ctx)
    except (SettlementError, SQLAlchemyError) as e:
        db.rollback()
        logger.exception("transfer sweep aborted")
        return JSONResponse(status_code=500, content={"error": "Failed to process transfers", "details": str(e)})


@router.get("/cron/diagnose-transfers")
def diagnose(authorization: str | None = Header(default=None), db: Session = Depends(get_db)):
    denied = check_shared_secret(authorization, settings.CRON_SECRET, "CRON_SECRET")
    if denied is not None:
        return denied
    try:
        return diagnose_transfers(db, utcnow())
    except SQLAlchemyError as e:
        logger.exception("transfer diagnostics failed")
        return JSONResponse(status_code=500, content={"error": "Diagnostic failed", "details": str(e)})
