# backend/chowline/config.py
from __future__ import annotations
import os


DEFAULT_SECRET_KEY = "dev-secret-key-change-me"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # development | testing | production
    APP_ENV = os.environ.get("APP_ENV", "development")

    SECRET_KEY = os.environ.get("SECRET_KEY", DEFAULT_SECRET_KEY)

    # SQLite DB stored in backend/instance/chowline.sqlite3 by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///chowline.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Short store timeout; expiry surfaces as PersistenceFailure
    DB_TIMEOUT_SECONDS = int(os.environ.get("DB_TIMEOUT_SECONDS", "5"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Comma-separated browser origins allowed to call the API
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if o.strip()
    )

    # bcrypt cost factor
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

    SESSION_LIFETIME_HOURS = int(os.environ.get("SESSION_LIFETIME_HOURS", "24"))
    SESSION_IDLE_MINUTES = int(os.environ.get("SESSION_IDLE_MINUTES", "120"))

    # Order numbers: PREFIX-YYYYMMDD-NNN, sequential per local calendar day
    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "CHW")
    ORDER_NUMBER_TIMEZONE = os.environ.get("ORDER_NUMBER_TIMEZONE", "Africa/Lagos")

    # Nigerian mobile numbers: +234 or 0, then 7/8/9, then 0/1, then 8 digits
    DELIVERY_PHONE_PATTERN = os.environ.get(
        "DELIVERY_PHONE_PATTERN",
        r"^(\+234|0)[789][01]\d{8}$",
    )

    STALE_ORDER_MINUTES = int(os.environ.get("STALE_ORDER_MINUTES", "120"))

    # Shared secret for the scheduler (distinct from user sessions)
    CRON_SECRET = os.environ.get("CRON_SECRET")

    RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)

    AUDIT_EXPORT_ENABLED = _env_bool("AUDIT_EXPORT_ENABLED", False)
    AUDIT_EXPORT_DIR = os.environ.get("AUDIT_EXPORT_DIR", "audit-archive")
    AUDIT_EXPORT_PREFIX = os.environ.get("AUDIT_EXPORT_PREFIX", "chowline-audit")


def engine_options_for(uri: str, timeout_seconds: int) -> dict:
    """Driver-level timeouts so no store access blocks indefinitely."""
    if uri.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout_seconds}}
    if uri.startswith("postgresql"):
        return {
            "pool_timeout": timeout_seconds,
            "connect_args": {
                "connect_timeout": timeout_seconds,
                "options": f"-c statement_timeout={timeout_seconds * 1000}",
            },
        }
    return {"pool_timeout": timeout_seconds}
