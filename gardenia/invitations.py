import json
import secrets
from datetime import timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .audit import write_audit_log
from .authn import hash_token, normalize_email, register_user
from .config import settings
from .errors import ConflictError
from .models import Clinic, ClinicUser, Invitation, User, utc_now_naive
from .permissions import apply_role_defaults, normalize_role, replace_permissions, validate_pair
from .services import can_assign_owner, get_membership

logger = structlog.get_logger("gardenia.invitations")


def invitation_link(raw_token: str) -> str:
    return f"{settings.INVITATION_BASE_URL}?token={raw_token}"


def invitation_permissions(row: Invitation) -> list[tuple[str, str]] | None:
    if not row.permissions:
        return None
    try:
        data = json.loads(row.permissions)
    except json.JSONDecodeError:
        return None
    return [(str(item["module"]), str(item["action"])) for item in data]


def is_pending(row: Invitation) -> bool:
    return row.accepted_at is None and row.revoked_at is None and row.expires_at > utc_now_naive()


def create_invitation(
    db: Session,
    clinic: Clinic,
    *,
    email: str,
    role: str,
    permissions: list[tuple[str, str]] | None,
    actor: User,
    actor_membership: ClinicUser | None,
) -> tuple[str, Invitation]:
    normalized_email = normalize_email(email)
    role_value = normalize_role(role)
    if role_value == "OWNER" and not can_assign_owner(actor, actor_membership):
        raise PermissionError("Only an owner can invite another owner")

    existing_user = db.execute(select(User).where(User.email == normalized_email)).scalar_one_or_none()
    if existing_user is not None and get_membership(db, clinic.id, existing_user.id) is not None:
        raise ConflictError("User is already a member of this clinic")

    perms_json = None
    if permissions is not None:
        pairs = []
        for module, action in permissions:
            m, a = validate_pair(module, action)
            if {"module": m, "action": a} not in pairs:
                pairs.append({"module": m, "action": a})
        perms_json = json.dumps(pairs)

    now = utc_now_naive()
    # a new invitation replaces any pending one for the same address
    replaced = db.execute(
        update(Invitation)
        .where(
            Invitation.clinic_id == clinic.id,
            Invitation.email == normalized_email,
            Invitation.accepted_at.is_(None),
            Invitation.revoked_at.is_(None),
        )
        .values(revoked_at=now)
    )

    raw = secrets.token_urlsafe(32)
    row = Invitation(
        clinic_id=clinic.id,
        email=normalized_email,
        role=role_value,
        token_hash=hash_token(raw),
        permissions=perms_json,
        invited_by=actor.id,
        expires_at=now + timedelta(days=max(1, int(settings.INVITATION_TTL_DAYS))),
        created_at=now,
    )
    db.add(row)
    db.flush()
    write_audit_log(
        db,
        clinic.id,
        "invitation.created",
        "invitation",
        row.id,
        actor=actor,
        payload={"email": normalized_email, "role": role_value, "replaced": int(replaced.rowcount or 0)},
        commit=False,
    )
    db.commit()
    db.refresh(row)
    logger.info("invitation_created", clinic_id=clinic.id, invitation_id=row.id, role=role_value)
    return raw, row


def get_invitation_by_token(db: Session, raw_token: str) -> Invitation | None:
    token = str(raw_token or "").strip()
    if not token:
        return None
    row = db.execute(select(Invitation).where(Invitation.token_hash == hash_token(token))).scalar_one_or_none()
    if row is None or row.revoked_at is not None:
        return None
    return row


def ensure_usable(row: Invitation) -> None:
    if row.accepted_at is not None:
        raise ConflictError("Invitation already used")
    if row.expires_at <= utc_now_naive():
        raise ValueError("Invitation expired")


def accept_invitation(db: Session, raw_token: str, user: User, commit: bool = True) -> ClinicUser | None:
    row = get_invitation_by_token(db, raw_token)
    if row is None:
        return None
    ensure_usable(row)
    if row.email != str(user.email or "").strip().lower():
        raise PermissionError("Invitation was issued for a different email")
    if get_membership(db, row.clinic_id, user.id) is not None:
        raise ConflictError("User is already a member of this clinic")

    now = utc_now_naive()
    claimed = db.execute(
        update(Invitation)
        .where(Invitation.id == row.id, Invitation.accepted_at.is_(None), Invitation.revoked_at.is_(None))
        .values(accepted_at=now, accepted_by=user.id)
    )
    if int(claimed.rowcount or 0) != 1:
        db.rollback()
        raise ConflictError("Invitation already used")

    membership = ClinicUser(
        clinic_id=row.clinic_id,
        user_id=user.id,
        role=row.role,
        invited_by=row.invited_by,
        invited_at=row.created_at,
        accepted_at=now,
    )
    db.add(membership)
    db.flush()
    explicit = invitation_permissions(row)
    if explicit is not None:
        replace_permissions(db, membership, explicit, commit=False)
    else:
        apply_role_defaults(db, membership, commit=False)
    write_audit_log(
        db,
        row.clinic_id,
        "invitation.accepted",
        "invitation",
        row.id,
        actor=user,
        payload={"clinic_user_id": membership.id, "role": membership.role},
        commit=False,
    )
    if commit:
        db.commit()
        db.refresh(membership)
    logger.info("invitation_accepted", clinic_id=row.clinic_id, invitation_id=row.id, user_id=user.id)
    return membership


def register_with_invitation(db: Session, raw_token: str, *, name: str, password: str) -> tuple[User, ClinicUser] | None:
    row = get_invitation_by_token(db, raw_token)
    if row is None:
        return None
    ensure_usable(row)
    # the new account is only committed together with its membership
    try:
        user = register_user(db, name=name, email=row.email, password=password, commit=False)
        membership = accept_invitation(db, raw_token, user, commit=False)
    except (ValueError, PermissionError):
        db.rollback()
        raise
    if membership is None:
        db.rollback()
        return None
    db.commit()
    db.refresh(user)
    db.refresh(membership)
    return user, membership


def list_invitations(db: Session, clinic_id: int, pending_only: bool = False) -> list[Invitation]:
    q = db.query(Invitation).filter(Invitation.clinic_id == clinic_id)
    if pending_only:
        q = q.filter(
            Invitation.accepted_at.is_(None),
            Invitation.revoked_at.is_(None),
            Invitation.expires_at > utc_now_naive(),
        )
    return q.order_by(Invitation.created_at.desc(), Invitation.id.desc()).all()


def revoke_invitation(db: Session, clinic_id: int, invitation_id: int, *, actor: User) -> Invitation | None:
    row = db.execute(
        select(Invitation).where(Invitation.clinic_id == clinic_id, Invitation.id == invitation_id)
    ).scalar_one_or_none()
    if row is None:
        return None
    if row.accepted_at is not None:
        raise ConflictError("Invitation already used")
    if row.revoked_at is None:
        row.revoked_at = utc_now_naive()
        write_audit_log(db, clinic_id, "invitation.revoked", "invitation", row.id, actor=actor, commit=False)
        db.commit()
        db.refresh(row)
        logger.info("invitation_revoked", clinic_id=clinic_id, invitation_id=row.id)
    return row
