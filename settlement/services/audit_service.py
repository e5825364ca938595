import uuid, json
from sqlalchemy.orm import Session
from settlement.models.audit_log import AuditLog

# Actor ids for entries written by jobs rather than a signed-in user
CRON_ACTOR = "cron"
WORKER_ACTOR = "worker"


def log_audit(db: Session, actor_user_id: str, action: str, entity_type: str, entity_id: str, details: dict | None = None):
    """Stage an audit row on the session. The caller's commit makes it durable together with the change it describes."""
    db.add(AuditLog(
        id=str(uuid.uuid4()),
        actor_user_id=actor_user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details_json=json.dumps(details or {}, ensure_ascii=False, default=str),
    ))


def audit_entries(db: Session, entity_type: str, entity_id: str) -> list[AuditLog]:
    return (
        db.query(AuditLog)
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.created_at.asc())
        .all()
    )
