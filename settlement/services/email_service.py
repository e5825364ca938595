from datetime import datetime, timezone
import logging
import smtplib
from email.message import EmailMessage
from sqlalchemy.orm import Session
import uuid
import requests

from settlement.core.config import settings
from settlement.models.email_log import EmailLog

logger = logging.getLogger(__name__)

MAX_SEND_ATTEMPTS = 5


def queue_alert(db: Session, subject: str, body: str, category: str = "ops_alert", recipients: list[str] | None = None) -> list[str]:
    """Queue an ops alert for every configured recipient and try to send it right away.

    A failed send stays in the queue; ``process_pending_emails`` retries it from the worker.
    Returns the queued EmailLog ids (empty when no recipients are configured).
    """
    to_list = recipients if recipients is not None else settings.ops_alert_recipients
    if not to_list:
        logger.warning("ops alert dropped, OPS_ALERT_EMAILS is empty: %s", subject)
        return []

    ids = []
    for to_email in to_list:
        eid = str(uuid.uuid4())
        db.add(EmailLog(id=eid, to_email=to_email, subject=subject[:200], body=body, category=category, status="queued"))
        ids.append(eid)
    db.commit()

    for eid in ids:
        _attempt(db, db.get(EmailLog, eid))
    db.commit()
    return ids


def _attempt(db: Session, log: EmailLog | None) -> bool:
    if log is None:
        return False
    log.attempts = (log.attempts or 0) + 1
    try:
        send_email(log.to_email, log.subject, log.body)
    except (smtplib.SMTPException, OSError, requests.RequestException, RuntimeError) as e:
        log.status = "failed"
        log.last_error = str(e)[:1000]
        logger.warning("alert email to %s failed (attempt %s): %s", log.to_email, log.attempts, e)
        return False
    log.status = "sent"
    log.sent_at = datetime.now(timezone.utc)
    log.last_error = None
    return True


def send_email(to_email: str, subject: str, body: str):
    """Send email via SendGrid if configured, otherwise SMTP (MailHog recommended for local)."""

    if settings.SENDGRID_API_KEY:
        _send_via_sendgrid(to_email, subject, body)
        return

    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


def _send_via_sendgrid(to_email: str, subject: str, body: str):
    payload = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": settings.SENDGRID_FROM_EMAIL or settings.SMTP_FROM},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    r = requests.post(
        "https://api.sendgrid.com/v3/mail/send",
        json=payload,
        headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
        timeout=20,
    )
    if r.status_code >= 400:
        raise RuntimeError(f"SendGrid error {r.status_code}: {r.text}")


def process_pending_emails(db: Session, limit: int = 50) -> dict:
    """Retry queued or failed alerts that still have attempts left. Returns counts."""
    pending = (
        db.query(EmailLog)
        .filter(EmailLog.status.in_(["queued", "failed"]), EmailLog.attempts < MAX_SEND_ATTEMPTS)
        .order_by(EmailLog.created_at.asc())
        .limit(limit)
        .all()
    )
    sent = sum(1 for log in pending if _attempt(db, log))
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": len(pending) - sent}
