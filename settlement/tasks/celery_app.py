from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from settlement.core.config import settings


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. Upstash TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        return urlunparse(parsed._replace(query=urlencode(qs, doseq=True)))
    return url


_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "settlement",
    broker=_redis_url,
    backend=_redis_url,
    include=["settlement.tasks.jobs"],
)

# Payout windows and the Wednesday payout run are defined in UTC
celery.conf.timezone = settings.CELERY_TIMEZONE


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    from settlement.core.logging_setup import configure_logging
    configure_logging()


celery.conf.beat_schedule = {
    "process-transfers-hourly": {
        "task": "settlement.tasks.jobs.process_transfers",
        "schedule": crontab(minute=0),
    },
    "weekly-payouts-wednesday-noon": {
        "task": "settlement.tasks.jobs.process_weekly_payouts",
        "schedule": crontab(minute=0, hour=12, day_of_week="wed"),
    },
    "reconcile-payouts-daily": {
        "task": "settlement.tasks.jobs.reconcile_payouts",
        "schedule": crontab(minute=30, hour=3),
    },
    "process-email-queue-every-2-minutes": {
        "task": "settlement.tasks.jobs.process_email_queue",
        "schedule": 120.0,
        "kwargs": {"limit": 50},
    },
}
