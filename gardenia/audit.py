import json
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy.orm import Session

from .models import AuditLog, User, utc_now_naive
from .request_context import request_id_ctx

logger = structlog.get_logger("gardenia.audit")


def _json_dumps(payload: Any) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def write_audit_log(
    db: Session,
    clinic_id: int | None,
    action: str,
    resource_type: str,
    resource_id: str | int | None = None,
    actor: User | None = None,
    payload: dict | None = None,
    *,
    commit: bool = True,
) -> AuditLog:
    row = AuditLog(
        clinic_id=clinic_id,
        actor_user_id=(actor.id if actor is not None else None),
        actor_email=(actor.email if actor is not None else None),
        action=(action or "").strip(),
        resource_type=(resource_type or "").strip(),
        resource_id=(str(resource_id) if resource_id is not None else None),
        request_id=request_id_ctx.get(),
        payload_json=_json_dumps(payload),
        created_at=utc_now_naive(),
    )
    db.add(row)
    if commit:
        db.commit()
        db.refresh(row)
    logger.info("audit_logged", audit_action=row.action, resource_type=row.resource_type, resource_id=row.resource_id)
    return row


def list_audit_logs(
    db: Session,
    clinic_id: int,
    limit: int = 200,
    action: str | None = None,
    resource_type: str | None = None,
    since_minutes: int | None = None,
) -> list[AuditLog]:
    q = db.query(AuditLog).filter(AuditLog.clinic_id == clinic_id)
    if action:
        q = q.filter(AuditLog.action == action.strip())
    if resource_type:
        q = q.filter(AuditLog.resource_type == resource_type.strip())
    if since_minutes is not None:
        cutoff = utc_now_naive() - timedelta(minutes=max(1, int(since_minutes)))
        q = q.filter(AuditLog.created_at >= cutoff)
    return (
        q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(max(1, min(int(limit), 1000)))
        .all()
    )
