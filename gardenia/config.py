import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    APP_NAME = os.getenv("APP_NAME", "Gardenia").strip()
    APP_LOCALE = os.getenv("APP_LOCALE", "pt-BR").strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./gardenia.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    DB_SCHEMA_CHECK_ON_STARTUP = _get_bool("DB_SCHEMA_CHECK_ON_STARTUP", True)
    REDIS_URL = os.getenv("REDIS_URL", "").strip()

    SESSION_SECRET_KEY = os.getenv("SESSION_SECRET_KEY", "change-this-in-prod").strip()
    SESSION_ALGORITHM = os.getenv("SESSION_ALGORITHM", "HS256").strip()
    SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "gardenia_session").strip()
    SESSION_COOKIE_SECURE = _get_bool("SESSION_COOKIE_SECURE", False)
    SESSION_TTL_HOURS = _get_int("SESSION_TTL_HOURS", 24 * 30)
    SESSION_MAX_ACTIVE_PER_USER = _get_int("SESSION_MAX_ACTIVE_PER_USER", 8)

    AUTH_PASSWORD_MIN_LENGTH = _get_int("AUTH_PASSWORD_MIN_LENGTH", 8)
    AUTH_PASSWORD_REQUIRE_UPPER = _get_bool("AUTH_PASSWORD_REQUIRE_UPPER", False)
    AUTH_PASSWORD_REQUIRE_LOWER = _get_bool("AUTH_PASSWORD_REQUIRE_LOWER", True)
    AUTH_PASSWORD_REQUIRE_DIGIT = _get_bool("AUTH_PASSWORD_REQUIRE_DIGIT", True)
    AUTH_PASSWORD_REQUIRE_SPECIAL = _get_bool("AUTH_PASSWORD_REQUIRE_SPECIAL", False)

    AUTH_LOGIN_RL_PER_MIN = _get_int("AUTH_LOGIN_RL_PER_MIN", 8)
    AUTH_LOGIN_RL_PER_HOUR = _get_int("AUTH_LOGIN_RL_PER_HOUR", 40)
    AUTH_LOGIN_RL_EVENT_RETENTION_HOURS = _get_int("AUTH_LOGIN_RL_EVENT_RETENTION_HOURS", 4)

    INVITATION_TTL_DAYS = _get_int("INVITATION_TTL_DAYS", 7)
    INVITATION_BASE_URL = os.getenv("INVITATION_BASE_URL", "/accept-invitation").strip()

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
    STRIPE_DEFAULT_PRICE_ID = os.getenv("STRIPE_DEFAULT_PRICE_ID", "").strip()
    PAYMENT_DEFAULT_CURRENCY = os.getenv("PAYMENT_DEFAULT_CURRENCY", "BRL").strip().upper()

    MAINTENANCE_MODE = _get_bool("MAINTENANCE_MODE", False)
    MAINTENANCE_READ_ONLY = _get_bool("MAINTENANCE_READ_ONLY", False)
    MAINTENANCE_RETRY_AFTER_SECONDS = _get_int("MAINTENANCE_RETRY_AFTER_SECONDS", 120)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)
    CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "*").strip()

    SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1").strip()
    SERVER_PORT = _get_int("SERVER_PORT", 8000)


settings = Settings()
