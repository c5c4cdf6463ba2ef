from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.booking_models import AuditLog


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: int | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=int(entity_id or 0),
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def list_audit_entries(db: Session, entity_type: str, entity_id: int, limit: int = 50) -> list[dict]:
    rows = db.execute(
        select(AuditLog)
        .where(AuditLog.EntityType == entity_type)
        .where(AuditLog.EntityID == entity_id)
        .order_by(AuditLog.AuditID.desc())
        .limit(max(1, limit))
    ).scalars().all()
    return [
        {
            "auditID": row.AuditID,
            "entityType": row.EntityType,
            "entityID": row.EntityID,
            "action": row.Action,
            "details": row.Details,
            "userID": row.UserID,
            "createdAt": row.CreatedAt,
        }
        for row in rows
    ]
