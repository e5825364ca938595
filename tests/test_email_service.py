import smtplib

from settlement.models.email_log import EmailLog
from settlement.services import email_service


def test_alert_without_recipients_is_not_queued(db):
    assert email_service.queue_alert(db, "subject", "body", recipients=[]) == []
    assert db.query(EmailLog).count() == 0


def test_failed_alert_is_retried_by_queue(db, monkeypatch):
    def _down(*args, **kwargs):
        raise smtplib.SMTPServerDisconnected("gone")

    monkeypatch.setattr(email_service, "send_email", _down)
    ids = email_service.queue_alert(db, "[settlement] 1 transfer(s) failed", "BK-1: boom", recipients=["ops@tours.test"])

    log = db.get(EmailLog, ids[0])
    assert log.status == "failed"
    assert log.attempts == 1
    assert "gone" in log.last_error

    sent = []
    monkeypatch.setattr(email_service, "send_email", lambda to, subject, body: sent.append(to))
    counts = email_service.process_pending_emails(db)

    assert counts == {"processed": 1, "sent": 1, "failed": 0}
    assert sent == ["ops@tours.test"]
    db.refresh(log)
    assert log.status == "sent"
    assert log.attempts == 2


def test_gives_up_after_max_attempts(db, monkeypatch):
    db.add(EmailLog(id="e-1", to_email="ops@tours.test", subject="s", body="b", status="failed",
                    attempts=email_service.MAX_SEND_ATTEMPTS))
    db.commit()
    monkeypatch.setattr(email_service, "send_email", lambda *a: None)

    assert email_service.process_pending_emails(db)["processed"] == 0
