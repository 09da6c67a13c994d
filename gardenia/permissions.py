"""Flat (module, action) permission model for clinic members.

A member's grants live in the ``permissions`` table. ``SUPER_ADMIN`` users and
``OWNER`` / ``MANAGER`` members pass every check without a lookup.
"""

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .errors import ConflictError
from .models import ClinicUser, Permission, User

logger = structlog.get_logger("gardenia.permissions")

MODULES = (
    "dashboard",
    "users",
    "clients",
    "appointments",
    "financial",
    "reports",
    "settings",
    "crm",
    "inventory",
)
ACTIONS = ("view", "create", "edit", "delete", "export")

CLINIC_ROLES = ("OWNER", "MANAGER", "PROFESSIONAL", "RECEPTIONIST", "FINANCIAL", "MARKETING", "STAFF")
BYPASS_CLINIC_ROLES = {"OWNER", "MANAGER"}

_ALL = [(m, a) for m in MODULES for a in ACTIONS]
_MANAGER_EXCLUDED = {
    ("financial", "delete"),
    ("settings", "edit"),
    ("crm", "delete"),
    ("inventory", "delete"),
}
_FRONT_DESK = [
    ("dashboard", "view"),
    ("clients", "view"),
    ("clients", "create"),
    ("clients", "edit"),
    ("appointments", "view"),
    ("appointments", "create"),
    ("appointments", "edit"),
]

ROLE_DEFAULT_PERMISSIONS: dict[str, list[tuple[str, str]]] = {
    "OWNER": list(_ALL),
    "MANAGER": [pair for pair in _ALL if pair not in _MANAGER_EXCLUDED],
    "PROFESSIONAL": list(_FRONT_DESK),
    "RECEPTIONIST": _FRONT_DESK + [("appointments", "delete")],
    "FINANCIAL": [
        ("dashboard", "view"),
        ("clients", "view"),
        ("financial", "view"),
        ("financial", "create"),
        ("financial", "edit"),
        ("financial", "delete"),
        ("reports", "view"),
        ("reports", "export"),
    ],
    "MARKETING": [
        ("dashboard", "view"),
        ("clients", "view"),
        ("reports", "view"),
        ("reports", "export"),
        ("crm", "view"),
        ("crm", "create"),
        ("crm", "edit"),
    ],
    "STAFF": [
        ("dashboard", "view"),
        ("clients", "view"),
        ("appointments", "view"),
    ],
}


def normalize_role(role: str) -> str:
    value = str(role or "").strip().upper()
    if value not in CLINIC_ROLES:
        raise ValueError(f"invalid role: {role}")
    return value


def validate_pair(module: str, action: str) -> tuple[str, str]:
    m = str(module or "").strip().lower()
    a = str(action or "").strip().lower()
    if m not in MODULES:
        raise ValueError(f"invalid module: {module}")
    if a not in ACTIONS:
        raise ValueError(f"invalid action: {action}")
    return m, a


def default_permissions_for_role(role: str) -> list[tuple[str, str]]:
    return list(ROLE_DEFAULT_PERMISSIONS.get(normalize_role(role), []))


def is_bypass(user: User, clinic_user: ClinicUser | None) -> bool:
    if str(user.role or "").upper() == "SUPER_ADMIN":
        return True
    return clinic_user is not None and str(clinic_user.role or "").upper() in BYPASS_CLINIC_ROLES


def has_permission(db: Session, user: User, clinic_user: ClinicUser | None, module: str, action: str) -> bool:
    if is_bypass(user, clinic_user):
        return True
    if clinic_user is None:
        return False
    row = db.execute(
        select(Permission.id).where(
            Permission.clinic_user_id == clinic_user.id,
            Permission.module == module,
            Permission.action == action,
        )
    ).first()
    return row is not None


def list_permissions(db: Session, clinic_user_id: int) -> list[Permission]:
    return (
        db.query(Permission)
        .filter(Permission.clinic_user_id == clinic_user_id)
        .order_by(Permission.module.asc(), Permission.action.asc())
        .all()
    )


def effective_permissions(db: Session, user: User, clinic_user: ClinicUser | None) -> list[tuple[str, str]]:
    if is_bypass(user, clinic_user):
        return list(_ALL)
    if clinic_user is None:
        return []
    return [(p.module, p.action) for p in list_permissions(db, clinic_user.id)]


def grant_permission(db: Session, clinic_user: ClinicUser, module: str, action: str) -> Permission:
    m, a = validate_pair(module, action)
    exists = db.execute(
        select(Permission).where(
            Permission.clinic_user_id == clinic_user.id,
            Permission.module == m,
            Permission.action == a,
        )
    ).scalar_one_or_none()
    if exists:
        raise ConflictError("Permission already granted")
    row = Permission(clinic_user_id=clinic_user.id, module=m, action=a)
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("permission_granted", clinic_user_id=clinic_user.id, module=m, action=a)
    return row


def revoke_permission(db: Session, clinic_user: ClinicUser, module: str, action: str) -> bool:
    m, a = validate_pair(module, action)
    result = db.execute(
        delete(Permission).where(
            Permission.clinic_user_id == clinic_user.id,
            Permission.module == m,
            Permission.action == a,
        )
    )
    db.commit()
    removed = int(result.rowcount or 0) > 0
    if removed:
        logger.info("permission_revoked", clinic_user_id=clinic_user.id, module=m, action=a)
    return removed


def _write_set(db: Session, clinic_user_id: int, pairs) -> list[Permission]:
    db.execute(delete(Permission).where(Permission.clinic_user_id == clinic_user_id))
    seen: set[tuple[str, str]] = set()
    for module, action in pairs:
        pair = validate_pair(module, action)
        if pair in seen:
            continue
        seen.add(pair)
        db.add(Permission(clinic_user_id=clinic_user_id, module=pair[0], action=pair[1]))
    db.flush()
    return list_permissions(db, clinic_user_id)


def replace_permissions(db: Session, clinic_user: ClinicUser, pairs, *, commit: bool = True) -> list[Permission]:
    # validate everything before touching the existing set
    clean = [validate_pair(m, a) for m, a in pairs]
    rows = _write_set(db, clinic_user.id, clean)
    if commit:
        db.commit()
    logger.info("permissions_replaced", clinic_user_id=clinic_user.id, count=len(rows))
    return rows


def apply_role_defaults(db: Session, clinic_user: ClinicUser, *, commit: bool = True) -> list[Permission]:
    rows = _write_set(db, clinic_user.id, default_permissions_for_role(clinic_user.role))
    if commit:
        db.commit()
    logger.info("permissions_reset_to_role", clinic_user_id=clinic_user.id, role=clinic_user.role, count=len(rows))
    return rows


def copy_permissions(db: Session, *, source: ClinicUser, target: ClinicUser) -> list[Permission]:
    if source.clinic_id != target.clinic_id:
        raise ValueError("members belong to different clinics")
    if source.id == target.id:
        raise ValueError("source and target must differ")
    pairs = [(p.module, p.action) for p in list_permissions(db, source.id)]
    rows = _write_set(db, target.id, pairs)
    db.commit()
    logger.info("permissions_copied", source_id=source.id, target_id=target.id, count=len(rows))
    return rows
