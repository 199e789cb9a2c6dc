from datetime import datetime, timezone
from uuid import UUID
from sqlalchemy.orm import Session
from . import models


def log_action(
    db: Session,
    user_id: str | UUID | None,
    action: str,
    target_type: str | None = None,
    target_id: str | UUID | None = None,
    details: dict | None = None,
    *,
    at: datetime | None = None,
):
    """Stage an audit entry in the caller's transaction; the caller commits."""

    log = models.AuditLog(
        user_id=UUID(str(user_id)) if user_id else None,
        action=action,
        target_type=target_type,
        target_id=UUID(str(target_id)) if target_id else None,
        details=details or {},
        created_at=at or datetime.now(timezone.utc),
    )
    db.add(log)
    db.flush()
    return log


def actions_for(db: Session, target_id: UUID, action: str | None = None):
    query = db.query(models.AuditLog).filter(models.AuditLog.target_id == target_id)
    if action:
        query = query.filter(models.AuditLog.action == action)
    return query.order_by(models.AuditLog.created_at).all()
