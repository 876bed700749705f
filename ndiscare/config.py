import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


def _get_list(name: str) -> list[str]:
    raw = os.getenv(name, "").strip()
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings:
    APP_NAME = os.getenv("APP_NAME", "ndiscare").strip()
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ndiscare.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    DB_SCHEMA_CHECK_ON_STARTUP = _get_bool("DB_SCHEMA_CHECK_ON_STARTUP", True)
    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "").strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    SESSION_SECRET = os.getenv("SESSION_SECRET", "change-this-in-prod").strip()
    SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "ndiscare.sid").strip()
    SESSION_TTL_HOURS = _get_int("SESSION_TTL_HOURS", 24)
    SESSION_COOKIE_SECURE = _get_bool("SESSION_COOKIE_SECURE", False)
    AUTH_PASSWORD_MIN_LENGTH = _get_int("AUTH_PASSWORD_MIN_LENGTH", 8)
    AUTH_LOGIN_RL_PER_MIN = _get_int("AUTH_LOGIN_RL_PER_MIN", 5)
    AUTH_LOGIN_RL_PER_HOUR = _get_int("AUTH_LOGIN_RL_PER_HOUR", 30)

    RECURRENCE_MAX_OCCURRENCES = _get_int("RECURRENCE_MAX_OCCURRENCES", 52)
    RECURRENCE_MAX_DATE_BOUNDED = _get_int("RECURRENCE_MAX_DATE_BOUNDED", 366)
    CANCELLATION_NOTICE_HOURS = _get_int("CANCELLATION_NOTICE_HOURS", 24)

    INVOICE_GST_RATE = _get_float("INVOICE_GST_RATE", 0.0)
    INVOICE_DUE_DAYS = _get_int("INVOICE_DUE_DAYS", 30)
    NDIS_PUBLIC_HOLIDAYS = _get_list("NDIS_PUBLIC_HOLIDAYS")
    # Shifts are stored in UTC; time bands and pay periods use local time.
    LOCAL_UTC_OFFSET_MINUTES = _get_int("LOCAL_UTC_OFFSET_MINUTES", 600)
    PAY_PERIOD_ANCHOR = os.getenv("PAY_PERIOD_ANCHOR", "2024-01-01").strip()

    OPS_TIMEOUT_LIKE_MS = _get_int("OPS_TIMEOUT_LIKE_MS", 1500)
    OPS_EVENTS_PERSIST_ENABLED = _get_bool("OPS_EVENTS_PERSIST_ENABLED", True)
    OPS_EVENTS_STREAM = os.getenv("OPS_EVENTS_STREAM", "ndiscare.http_events").strip()

    MAINTENANCE_MODE = _get_bool("MAINTENANCE_MODE", False)
    MAINTENANCE_RETRY_AFTER_SECONDS = _get_int("MAINTENANCE_RETRY_AFTER_SECONDS", 120)
    DB_STARTUP_RETRY_AFTER_SECONDS = _get_int("DB_STARTUP_RETRY_AFTER_SECONDS", 5)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
