"""
Configuration for the access backend Flask app.
Production (Railway/Render): uses DATABASE_URL only; fails if missing.
Local: DATABASE_URL or DB_* fallback.
"""
import os
from urllib.parse import quote_plus


def _is_production():
    """True when running on Railway, Render, or explicit production."""
    return (
        os.environ.get("RENDER") == "true"
        or os.environ.get("RAILWAY_ENVIRONMENT") is not None
        or os.environ.get("FLASK_ENV") == "production"
    )


def _env_flag(name, default="false"):
    return os.environ.get(name, default).strip().lower() in ("true", "on", "1")


def _env_list(*names):
    """Comma-separated list from the first of names that is set and non-empty."""
    for name in names:
        items = [item.strip() for item in os.environ.get(name, "").split(",") if item.strip()]
        if items:
            return items
    return []


def _normalize_database_url(url):
    """Convert postgres:// to postgresql+psycopg2:// for SQLAlchemy/psycopg2."""
    if not url:
        return url
    url = url.strip()
    if url.startswith("postgres://"):
        return "postgresql+psycopg2://" + url[11:]
    if url.startswith("postgresql://") and "psycopg2" not in url:
        return "postgresql+psycopg2://" + url[13:]
    return url


def _get_database_uri():
    """Database URI: production = DATABASE_URL only; local = DATABASE_URL or DB_*."""
    if _is_production():
        url = os.environ.get("DATABASE_URL")
        if not url or not url.strip():
            raise RuntimeError(
                "DATABASE_URL is required in production (Railway/Render). "
                "Set it in your service environment variables."
            )
        return _normalize_database_url(url.strip())

    url = os.environ.get("DATABASE_URL")
    if url and url.strip():
        return _normalize_database_url(url.strip())

    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "outlivion")
    user = os.environ.get("DB_USER", "outlivion")
    password = os.environ.get("DB_PASSWORD", "")
    if password:
        password = quote_plus(password)
    return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get("SECRET_KEY") or "dev-secret-key-change-in-production"
    IS_PRODUCTION = _is_production()
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    # Number of reverse proxies in front of the app (X-Forwarded-For hops to trust)
    TRUST_PROXY = int(os.environ.get("TRUST_PROXY") or 1)

    SQLALCHEMY_DATABASE_URI = _get_database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Session tokens (no fallback: create_app refuses to start without a strong secret)
    JWT_SECRET = os.environ.get("JWT_SECRET")
    JWT_ACCESS_EXPIRES_IN = os.environ.get("JWT_ACCESS_EXPIRES_IN", "1h")
    JWT_REFRESH_EXPIRES_IN = os.environ.get("JWT_REFRESH_EXPIRES_IN", "7d")

    # Telegram
    TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")
    TELEGRAM_BOT_USERNAME = os.environ.get("TELEGRAM_BOT_USERNAME", "outlivionbot")
    TELEGRAM_INIT_DATA_MAX_AGE = int(os.environ.get("TELEGRAM_INIT_DATA_MAX_AGE") or 0)
    ALLOW_MOCK_AUTH = _env_flag("ALLOW_MOCK_AUTH")
    # Shared secret presented by the companion bot process (X-Bot-Api-Key)
    BOT_API_SECRET = os.environ.get("BOT_API_SECRET")
    LOGIN_SESSION_TTL_SECONDS = int(os.environ.get("LOGIN_SESSION_TTL_SECONDS") or 300)

    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

    # Payment gateway (Mercuryo)
    MERCURYO_WIDGET_URL = os.environ.get("MERCURYO_WIDGET_URL", "https://exchange.mercuryo.io/")
    MERCURYO_WIDGET_ID = os.environ.get("MERCURYO_WIDGET_ID")
    MERCURYO_SECRET = os.environ.get("MERCURYO_SECRET")
    MERCURYO_SIGN_KEY = os.environ.get("MERCURYO_SIGN_KEY")

    # Webhook guard
    # MERCURYO_ALLOWED_IPS is the older name, still honoured
    WEBHOOK_ALLOWED_IPS = _env_list("WEBHOOK_ALLOWED_IPS", "MERCURYO_ALLOWED_IPS")
    WEBHOOK_STRICT_IP_CHECK = _env_flag("WEBHOOK_STRICT_IP_CHECK")
    WEBHOOK_TIMESTAMP_CHECK = _env_flag("WEBHOOK_TIMESTAMP_CHECK", "true")

    # Provisioning panel (Marzban)
    MARZBAN_URL = os.environ.get("MARZBAN_URL")
    MARZBAN_USERNAME = os.environ.get("MARZBAN_USERNAME")
    MARZBAN_PASSWORD = os.environ.get("MARZBAN_PASSWORD")
    MARZBAN_TIMEOUT = float(os.environ.get("MARZBAN_TIMEOUT") or 10)
    PANEL_CALL_DELAY = float(os.environ.get("PANEL_CALL_DELAY") or 0.1)
    # Public address written into issued VLESS links; empty keeps the panel's own host
    VPN_PUBLIC_HOST = os.environ.get("VPN_PUBLIC_HOST")
    VPN_PUBLIC_PORT = int(os.environ.get("VPN_PUBLIC_PORT") or 0) or None

    # Referral bonus credited to the referrer on a referred user's first payment (kopecks)
    REFERRAL_BONUS_AMOUNT = int(os.environ.get("REFERRAL_BONUS_AMOUNT") or 5000)

    SCHEDULER_ENABLED = _env_flag("SCHEDULER_ENABLED", "true")

    RATELIMIT_ENABLED = _env_flag("RATELIMIT_ENABLED", "true")
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_HEADERS_ENABLED = True
