from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.timeutil import utcnow
from settlement.services.processor import PaymentProcessor

AlertHook = Callable[[str, str], None]


@dataclass
class JobContext:
    """Everything a settlement job needs from the outside world, passed in per run."""

    processor: PaymentProcessor
    clock: Callable[[], datetime] = utcnow
    transfer_batch_limit: int = 100
    claim_ttl: timedelta = timedelta(minutes=15)
    alert: AlertHook | None = None
    actor: str = "cron"

    def now(self) -> datetime:
        return self.clock()

    def send_alert(self, subject: str, body: str) -> None:
        if self.alert is not None:
            self.alert(subject, body)


def build_job_context(db: Session, actor: str = "cron") -> JobContext:
    """Production context: Stripe processor, wall clock, limits from settings, alerts by e-mail."""
    from settlement.services.email_service import queue_alert
    from settlement.services.stripe_client import build_stripe_processor

    return JobContext(
        processor=build_stripe_processor(settings.STRIPE_SECRET_KEY, settings.STRIPE_TIMEOUT_SECONDS),
        transfer_batch_limit=settings.TRANSFER_BATCH_LIMIT,
        claim_ttl=timedelta(minutes=settings.TRANSFER_CLAIM_TTL_MINUTES),
        alert=lambda subject, body: queue_alert(db, subject, body),
        actor=actor,
    )
