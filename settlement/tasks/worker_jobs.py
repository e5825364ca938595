import logging
from typing import Callable

from sqlalchemy.exc import ProgrammingError
from sqlalchemy.orm import Session

from settlement.core.logging_setup import start_job_run
from settlement.db.session import SessionLocal
from settlement.services import payout_service, sweep_service
from settlement.services.audit_service import WORKER_ACTOR
from settlement.services.email_service import process_pending_emails
from settlement.services.job_context import JobContext, build_job_context

logger = logging.getLogger(__name__)

ContextFactory = Callable[[Session, str], JobContext]


def _run(job_name: str, body: Callable[[Session], dict], session_factory=SessionLocal) -> dict:
    start_job_run(job_name)
    db: Session = session_factory()
    try:
        try:
            return body(db)
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            logger.warning("%s skipped: tables missing", job_name)
            return {"skipped": True, "reason": "missing_tables"}
    finally:
        db.close()


def process_transfers(context_factory: ContextFactory = build_job_context, session_factory=SessionLocal) -> dict:
    """Hourly sweep of due booking transfers."""
    return _run("transfer-sweep", lambda db: sweep_service.run_transfer_sweep(db, context_factory(db, WORKER_ACTOR)), session_factory)


def process_weekly_payouts(context_factory: ContextFactory = build_job_context, session_factory=SessionLocal) -> dict:
    return _run("weekly-payouts", lambda db: payout_service.process_weekly_payouts(db, context_factory(db, WORKER_ACTOR)), session_factory)


def reconcile_payouts(context_factory: ContextFactory = build_job_context, session_factory=SessionLocal) -> dict:
    return _run("payout-reconcile", lambda db: payout_service.reconcile_payouts(db, context_factory(db, WORKER_ACTOR)), session_factory)


def process_email_queue(limit: int = 50, session_factory=SessionLocal) -> dict:
    """Process queued/failed alert emails (retry send). Run periodically via Celery beat."""
    return _run("email-queue", lambda db: process_pending_emails(db, limit=limit), session_factory)
