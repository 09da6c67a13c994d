from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
import secrets
from threading import Lock
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field
import redis
import structlog
from sqlalchemy.orm import Session

from .authn import authenticate_user, change_password, create_session, register_user, revoke_session
from .config import settings
from .db import get_db
from .dependencies import get_current_session, get_current_user
from .errors import ConflictError
from .models import AuthSession, Clinic, User
from .services import list_memberships_for_user

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = structlog.get_logger("gardenia.auth")
_login_failures: dict[str, deque[datetime]] = defaultdict(deque)
_login_failures_lock = Lock()


class AuthRegisterIn(BaseModel):
    name: str = Field(min_length=2, max_length=160)
    email: str = Field(min_length=3, max_length=200)
    password: str = Field(min_length=8, max_length=200)


class AuthLoginIn(BaseModel):
    email: str = Field(min_length=3, max_length=200)
    password: str = Field(min_length=1, max_length=200)


class AuthPasswordChangeIn(BaseModel):
    current_password: str = Field(min_length=1, max_length=200)
    new_password: str = Field(min_length=8, max_length=200)


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: str
    is_active: bool
    last_login: datetime | None = None
    created_at: datetime


class MembershipOut(BaseModel):
    clinic_id: int
    clinic_name: str
    clinic_user_id: int
    role: str


class AuthSessionOut(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserOut


class AuthMeOut(BaseModel):
    user: UserOut
    clinics: list[MembershipOut]


class AuthLogoutOut(BaseModel):
    ok: bool


class AuthPasswordChangeOut(BaseModel):
    ok: bool
    revoked_sessions: int


def to_user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        is_active=bool(user.is_active),
        last_login=user.last_login,
        created_at=user.created_at,
    )


def client_ip_from_request(request: Optional[Request]) -> str:
    if request is None:
        return "unknown"
    xff = (request.headers.get("x-forwarded-for") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first[:64]
    if request.client and request.client.host:
        return str(request.client.host)[:64]
    return "unknown"


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=max(1, int(settings.SESSION_TTL_HOURS)) * 3600,
        httponly=True,
        secure=bool(settings.SESSION_COOKIE_SECURE),
        samesite="lax",
        path="/",
    )


def start_session(db: Session, user: User, request: Request, response: Response) -> AuthSessionOut:
    token, session = create_session(
        db,
        user,
        user_agent=request.headers.get("user-agent"),
        ip=client_ip_from_request(request),
    )
    set_session_cookie(response, token)
    return AuthSessionOut(token=token, expires_at=session.expires_at, user=to_user_out(user))


def _login_rate_limit_key(email: str, client_ip: str) -> str:
    return f"{email.strip().lower()}|{client_ip.strip().lower()}"


def _redis_client() -> redis.Redis | None:
    if not settings.REDIS_URL:
        return None
    try:
        return redis.from_url(settings.REDIS_URL, decode_responses=True)
    except (redis.RedisError, ValueError):
        return None


def _login_rate_limit_redis_key(email: str, client_ip: str) -> str:
    return f"gardenia:auth:fail:z:{_login_rate_limit_key(email, client_ip)}"


def _prune_login_failures(now: datetime) -> None:
    retention_h = max(1, int(settings.AUTH_LOGIN_RL_EVENT_RETENTION_HOURS))
    cutoff = now - timedelta(hours=retention_h)
    to_delete = []
    for key, events in _login_failures.items():
        while events and events[0] < cutoff:
            events.popleft()
        if not events:
            to_delete.append(key)
    for key in to_delete:
        _login_failures.pop(key, None)


def _is_login_rate_limited(email: str, client_ip: str) -> bool:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    per_min = max(1, int(settings.AUTH_LOGIN_RL_PER_MIN))
    per_hour = max(1, int(settings.AUTH_LOGIN_RL_PER_HOUR))
    redis_client = _redis_client()
    if redis_client is not None:
        retention_h = max(1, int(settings.AUTH_LOGIN_RL_EVENT_RETENTION_HOURS))
        now_ts = int(datetime.now(timezone.utc).timestamp())
        redis_key = _login_rate_limit_redis_key(email, client_ip)
        try:
            pipe = redis_client.pipeline()
            pipe.zremrangebyscore(redis_key, 0, now_ts - (retention_h * 3600))
            pipe.zcount(redis_key, now_ts - 60, "+inf")
            pipe.zcount(redis_key, now_ts - 3600, "+inf")
            pipe.expire(redis_key, (retention_h * 3600) + 3600)
            result = pipe.execute()
            return int(result[1] or 0) >= per_min or int(result[2] or 0) >= per_hour
        except redis.RedisError as exc:
            logger.warning("login_rate_limit_redis_unavailable", error=str(exc))

    key = _login_rate_limit_key(email, client_ip)
    minute_cutoff = now - timedelta(minutes=1)
    hour_cutoff = now - timedelta(hours=1)
    with _login_failures_lock:
        _prune_login_failures(now)
        events = _login_failures.get(key) or deque()
        minute_count = sum(1 for ts in events if ts >= minute_cutoff)
        hour_count = sum(1 for ts in events if ts >= hour_cutoff)
        return minute_count >= per_min or hour_count >= per_hour


def _record_login_failure(email: str, client_ip: str) -> None:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    redis_client = _redis_client()
    if redis_client is not None:
        retention_h = max(1, int(settings.AUTH_LOGIN_RL_EVENT_RETENTION_HOURS))
        now_ts = int(datetime.now(timezone.utc).timestamp())
        redis_key = _login_rate_limit_redis_key(email, client_ip)
        member = f"{now_ts}:{secrets.token_hex(8)}"
        try:
            pipe = redis_client.pipeline()
            pipe.zadd(redis_key, {member: now_ts})
            pipe.zremrangebyscore(redis_key, 0, now_ts - (retention_h * 3600))
            pipe.expire(redis_key, (retention_h * 3600) + 3600)
            pipe.execute()
            return
        except redis.RedisError as exc:
            logger.warning("login_rate_limit_redis_unavailable", error=str(exc))

    key = _login_rate_limit_key(email, client_ip)
    with _login_failures_lock:
        _prune_login_failures(now)
        _login_failures[key].append(now)


def _clear_login_failures(email: str, client_ip: str) -> None:
    redis_client = _redis_client()
    if redis_client is not None:
        try:
            redis_client.delete(_login_rate_limit_redis_key(email, client_ip))
        except redis.RedisError as exc:
            logger.warning("login_rate_limit_redis_unavailable", error=str(exc))
    key = _login_rate_limit_key(email, client_ip)
    with _login_failures_lock:
        _login_failures.pop(key, None)


@router.post("/register", response_model=AuthSessionOut, status_code=status.HTTP_201_CREATED)
def register(payload: AuthRegisterIn, request: Request, response: Response, db: Session = Depends(get_db)):
    try:
        user = register_user(db, name=payload.name, email=payload.email, password=payload.password)
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return start_session(db, user, request, response)


@router.post("/login", response_model=AuthSessionOut)
def login(payload: AuthLoginIn, request: Request, response: Response, db: Session = Depends(get_db)):
    client_ip = client_ip_from_request(request)
    if _is_login_rate_limited(payload.email, client_ip):
        logger.warning("login_rate_limited", client_ip=client_ip)
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many failed login attempts")
    user = authenticate_user(db, payload.email, payload.password)
    if not user:
        _record_login_failure(payload.email, client_ip)
        logger.info("login_failed", client_ip=client_ip)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    _clear_login_failures(payload.email, client_ip)
    logger.info("login_succeeded", user_id=user.id)
    return start_session(db, user, request, response)


@router.post("/logout", response_model=AuthLogoutOut)
def logout(
    response: Response,
    session: AuthSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    revoke_session(db, session.id)
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    return AuthLogoutOut(ok=True)


@router.get("/me", response_model=AuthMeOut)
def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    memberships = list_memberships_for_user(db, user.id)
    clinics = []
    for m in memberships:
        clinic = db.get(Clinic, m.clinic_id)
        clinics.append(
            MembershipOut(clinic_id=m.clinic_id, clinic_name=clinic.name, clinic_user_id=m.id, role=m.role)
        )
    return AuthMeOut(user=to_user_out(user), clinics=clinics)


@router.post("/password", response_model=AuthPasswordChangeOut)
def password_change(
    payload: AuthPasswordChangeIn,
    session: AuthSession = Depends(get_current_session),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        revoked = change_password(
            db,
            user=user,
            current_password=payload.current_password,
            new_password=payload.new_password,
            current_session_id=session.id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return AuthPasswordChangeOut(ok=True, revoked_sessions=revoked)
