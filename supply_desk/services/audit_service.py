from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from supply_desk.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor_staff_id: int | None,
    action: str,
    request_id: int | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_staff_id=actor_staff_id,
            action=action,
            request_id=request_id,
            meta=metadata or {},
        )
    )


def list_audit_entries(db: Session, *, request_id: int) -> list[dict]:
    rows = db.execute(
        select(AuditLog).where(AuditLog.request_id == request_id).order_by(AuditLog.id.asc())
    ).scalars().all()
    return [
        {
            'id': row.id,
            'actor_staff_id': row.actor_staff_id,
            'action': row.action,
            'metadata': row.meta,
            'created_at': row.created_at,
        }
        for row in rows
    ]
