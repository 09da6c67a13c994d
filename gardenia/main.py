from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

import redis
import structlog
import uvicorn

from .api import router
from .api_crm import router as crm_router
from .api_ops import router as ops_router
from .api_payments import router as payments_router
from .auth_api import router as auth_router
from .config import settings
from .core.logging_config import setup_logging
from .core.middleware import RequestContextMiddleware
from .db import SessionLocal, init_schema

__version__ = "0.1.0"

_MAINTENANCE_BYPASS_PREFIXES = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
)
_READ_ONLY_BYPASS_PREFIXES = (
    "/api/auth/",
    "/api/payments/webhook",
)

logger = structlog.get_logger("gardenia.main")

setup_logging()
init_schema()

app = FastAPI(
    title=settings.APP_NAME,
    description="Multi-tenant clinic management API",
    version=__version__,
)
app.state.session_local = SessionLocal


@app.middleware("http")
async def maintenance_mode_middleware(request: Request, call_next):
    path = request.url.path or ""
    method = request.method.upper()
    retry_after = str(max(1, int(settings.MAINTENANCE_RETRY_AFTER_SECONDS)))

    if bool(settings.MAINTENANCE_MODE):
        if not any(path.startswith(prefix) for prefix in _MAINTENANCE_BYPASS_PREFIXES):
            return JSONResponse(
                status_code=503,
                content={"detail": "Service temporarily unavailable: maintenance mode"},
                headers={"Retry-After": retry_after},
            )

    if bool(settings.MAINTENANCE_READ_ONLY):
        if method not in {"GET", "HEAD", "OPTIONS"} and not any(
            path.startswith(prefix) for prefix in _READ_ONLY_BYPASS_PREFIXES
        ):
            return JSONResponse(
                status_code=503,
                content={"detail": "Service is in read-only mode"},
                headers={"Retry-After": retry_after},
            )
    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


origins = [o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials="*" not in origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
# added last so it wraps everything and sees the final status code
app.add_middleware(RequestContextMiddleware)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    checks = {
        "db": "ok",
        "redis": "skipped",
    }

    db_ok = True
    redis_ok = True

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("readiness_db_failed", error=str(exc))
        checks["db"] = "error"
        db_ok = False

    redis_url = (settings.REDIS_URL or "").strip()
    if redis_url:
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            checks["redis"] = "ok"
        except (redis.RedisError, ValueError) as exc:
            logger.error("readiness_redis_failed", error=str(exc))
            checks["redis"] = "error"
            redis_ok = False

    if db_ok and redis_ok:
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(auth_router)
app.include_router(router)
app.include_router(payments_router)
app.include_router(crm_router)
app.include_router(ops_router)


def run() -> None:
    uvicorn.run(
        "gardenia.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
