from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from .authn import extract_token, get_session_for_token
from .config import settings
from .db import get_db
from .models import AuthSession, Clinic, ClinicUser, User, utc_now_naive
from .permissions import has_permission, is_bypass


@dataclass
class ClinicAccess:
    user: User
    clinic: Clinic
    membership: ClinicUser | None

    @property
    def is_manager(self) -> bool:
        return is_bypass(self.user, self.membership)


def get_current_session(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> AuthSession:
    token = extract_token(authorization, request.cookies.get(settings.SESSION_COOKIE_NAME))
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    session = get_session_for_token(db, token)
    if not session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired session")
    return session


def get_current_user(
    session: AuthSession = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> User:
    user = db.get(User, session.user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User inactive")
    session.last_seen_at = utc_now_naive()
    db.commit()
    structlog.contextvars.bind_contextvars(user_id=user.id)
    return user


def _load_access(db: Session, clinic_id: int, user: User) -> ClinicAccess:
    clinic = db.get(Clinic, clinic_id)
    if not clinic:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Clinic not found")
    membership = db.execute(
        select(ClinicUser).where(ClinicUser.clinic_id == clinic_id, ClinicUser.user_id == user.id)
    ).scalar_one_or_none()
    if membership is None and str(user.role).upper() != "SUPER_ADMIN":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No access to this clinic")
    structlog.contextvars.bind_contextvars(clinic_id=clinic_id)
    return ClinicAccess(user=user, clinic=clinic, membership=membership)


def require_clinic_member(
    clinic_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ClinicAccess:
    return _load_access(db, clinic_id, user)


def require_clinic_manager(
    access: ClinicAccess = Depends(require_clinic_member),
) -> ClinicAccess:
    if not access.is_manager:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only clinic owner/manager can do this")
    return access


def require_permission(module: str, action: str):
    def dependency(
        access: ClinicAccess = Depends(require_clinic_member),
        db: Session = Depends(get_db),
    ) -> ClinicAccess:
        if not has_permission(db, access.user, access.membership, module, action):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No access to this feature")
        return access

    dependency.__name__ = f"require_{module}_{action}"
    return dependency
