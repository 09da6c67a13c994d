import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta, timezone

import structlog
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .errors import ConflictError
from .models import AuthSession, User, utc_now_naive

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
logger = structlog.get_logger("gardenia.authn")

GLOBAL_ROLES = {"SUPER_ADMIN", "STAFF"}


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def validate_password_policy(password: str) -> None:
    raw = str(password or "")
    min_len = max(8, int(settings.AUTH_PASSWORD_MIN_LENGTH))
    if len(raw) < min_len:
        raise ValueError(f"password must be at least {min_len} chars")
    if bool(settings.AUTH_PASSWORD_REQUIRE_UPPER) and not re.search(r"[A-Z]", raw):
        raise ValueError("password must contain at least one uppercase letter")
    if bool(settings.AUTH_PASSWORD_REQUIRE_LOWER) and not re.search(r"[a-z]", raw):
        raise ValueError("password must contain at least one lowercase letter")
    if bool(settings.AUTH_PASSWORD_REQUIRE_DIGIT) and not re.search(r"[0-9]", raw):
        raise ValueError("password must contain at least one digit")
    if bool(settings.AUTH_PASSWORD_REQUIRE_SPECIAL) and not re.search(r"[^A-Za-z0-9]", raw):
        raise ValueError("password must contain at least one special character")


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    value = str(email or "").strip().lower()
    if not value or "@" not in value or value.startswith("@") or value.endswith("@"):
        raise ValueError("valid email is required")
    return value


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.execute(select(User).where(User.email == str(email or "").strip().lower())).scalar_one_or_none()


def register_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: str = "STAFF",
    commit: bool = True,
) -> User:
    clean_name = str(name or "").strip()
    if not clean_name:
        raise ValueError("name is required")
    normalized_email = normalize_email(email)
    validate_password_policy(password)
    role_value = str(role or "STAFF").strip().upper()
    if role_value not in GLOBAL_ROLES:
        raise ValueError("invalid role")

    if get_user_by_email(db, normalized_email):
        raise ConflictError("User already exists")

    row = User(
        name=clean_name,
        email=normalized_email,
        password_hash=hash_password(password),
        role=role_value,
        is_active=True,
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("User already exists") from exc
    if commit:
        db.commit()
        db.refresh(row)
    logger.info("user_registered", user_id=row.id, role=row.role)
    return row


def authenticate_user(db: Session, email: str, password: str) -> User | None:
    row = get_user_by_email(db, email)
    if not row or not row.is_active:
        return None
    if not verify_password(password, row.password_hash):
        return None
    row.last_login = utc_now_naive()
    db.commit()
    return row


def _encode_session_token(*, user_id: int, session_id: int, secret: str, expires_at: datetime) -> str:
    payload = {
        "sub": str(user_id),
        "sid": int(session_id),
        "sec": secret,
        "exp": expires_at.replace(tzinfo=timezone.utc),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.SESSION_SECRET_KEY, algorithm=settings.SESSION_ALGORITHM)


def _decode_session_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.SESSION_SECRET_KEY, algorithms=[settings.SESSION_ALGORITHM])
    except JWTError:
        return None


def create_session(
    db: Session,
    user: User,
    *,
    user_agent: str | None = None,
    ip: str | None = None,
) -> tuple[str, AuthSession]:
    max_active = max(1, int(settings.SESSION_MAX_ACTIVE_PER_USER))
    active_rows = (
        db.query(AuthSession)
        .filter(
            AuthSession.user_id == user.id,
            AuthSession.is_revoked.is_(False),
            AuthSession.expires_at > utc_now_naive(),
        )
        .order_by(AuthSession.created_at.asc(), AuthSession.id.asc())
        .all()
    )
    overflow = max(0, len(active_rows) - (max_active - 1))
    for row in active_rows[:overflow]:
        row.is_revoked = True

    secret = secrets.token_urlsafe(32)
    expires = utc_now_naive() + timedelta(hours=max(1, int(settings.SESSION_TTL_HOURS)))
    row = AuthSession(
        user_id=user.id,
        token_hash=hash_token(secret),
        is_revoked=False,
        expires_at=expires,
        created_at=utc_now_naive(),
        user_agent=(user_agent or "")[:300] or None,
        ip=(ip or "")[:64] or None,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    token = _encode_session_token(user_id=user.id, session_id=row.id, secret=secret, expires_at=expires)
    logger.info("session_created", user_id=user.id, session_id=row.id, revoked_overflow=overflow)
    return token, row


def get_session_for_token(db: Session, token: str) -> AuthSession | None:
    payload = _decode_session_token(str(token or "").strip())
    if not payload:
        return None
    try:
        user_id = int(payload.get("sub") or 0)
        session_id = int(payload.get("sid") or 0)
    except (TypeError, ValueError):
        return None
    secret = str(payload.get("sec") or "")
    if user_id <= 0 or session_id <= 0 or not secret:
        return None

    row = db.execute(select(AuthSession).where(AuthSession.id == session_id)).scalar_one_or_none()
    if not row or row.is_revoked or int(row.user_id) != user_id:
        return None
    if row.expires_at <= utc_now_naive():
        return None
    if not hmac.compare_digest(row.token_hash, hash_token(secret)):
        return None
    return row


def resolve_session(db: Session, token: str) -> User | None:
    session = get_session_for_token(db, token)
    if not session:
        return None
    user = db.get(User, session.user_id)
    if not user or not user.is_active:
        return None
    session.last_seen_at = utc_now_naive()
    db.commit()
    return user


def revoke_session(db: Session, session_id: int) -> None:
    row = db.get(AuthSession, session_id)
    if not row:
        return
    row.is_revoked = True
    db.commit()
    logger.info("session_revoked", session_id=session_id, user_id=row.user_id)


def revoke_all_sessions_for_user(db: Session, *, user_id: int, except_session_id: int | None = None) -> int:
    stmt = update(AuthSession).where(AuthSession.user_id == user_id, AuthSession.is_revoked.is_(False))
    if except_session_id is not None:
        stmt = stmt.where(AuthSession.id != except_session_id)
    result = db.execute(stmt.values(is_revoked=True))
    db.commit()
    return int(result.rowcount or 0)


def change_password(
    db: Session,
    *,
    user: User,
    current_password: str,
    new_password: str,
    current_session_id: int | None = None,
) -> int:
    if not verify_password(current_password, user.password_hash):
        raise ValueError("Invalid current password")
    validate_password_policy(new_password)
    if verify_password(new_password, user.password_hash):
        raise ValueError("New password must differ from current password")
    user.password_hash = hash_password(new_password)
    user.updated_at = utc_now_naive()
    db.commit()
    revoked = revoke_all_sessions_for_user(db, user_id=user.id, except_session_id=current_session_id)
    logger.info("password_changed", user_id=user.id, revoked_sessions=revoked)
    return revoked


def extract_token(authorization_header: str | None, cookie_value: str | None) -> str | None:
    raw = (authorization_header or "").strip()
    if raw.lower().startswith("bearer "):
        token = raw[7:].strip()
        if token:
            return token
    cookie = (cookie_value or "").strip()
    return cookie or None
