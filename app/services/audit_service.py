from __future__ import annotations

from sqlalchemy.orm import Session

from app.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor_principal_id: str | None,
    store_id: str | None,
    action: str,
    ip: str | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            store_id=store_id,
            action=action,
            ip=ip,
            meta=metadata or {},
        )
    )

