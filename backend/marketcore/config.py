# backend/marketcore/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/marketcore.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///marketcore.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Observability
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "plain")  # "json" in production

    # Stock reservation window for unpaid orders
    RESERVATION_MINUTES = _int_env("RESERVATION_MINUTES", 10)

    # Concurrency retry budget (optimistic-lock conflicts, lock timeouts)
    RETRY_ATTEMPTS = _int_env("RETRY_ATTEMPTS", 3)
    RESERVATION_RETRY_ATTEMPTS = _int_env("RESERVATION_RETRY_ATTEMPTS", 8)

    # Settlement rates (basis points) and delivery fee bounds (cents)
    PLATFORM_FEE_BPS = _int_env("PLATFORM_FEE_BPS", 1000)
    DELIVERY_FEE_BPS = _int_env("DELIVERY_FEE_BPS", 500)
    DELIVERY_FEE_MIN_CENTS = _int_env("DELIVERY_FEE_MIN_CENTS", 1000)
    DELIVERY_FEE_MAX_CENTS = _int_env("DELIVERY_FEE_MAX_CENTS", 5000)
    DEFAULT_COMMISSION_BPS = _int_env("DEFAULT_COMMISSION_BPS", 300)

    MIN_WITHDRAWAL_CENTS = _int_env("MIN_WITHDRAWAL_CENTS", 100)

    # Corporate banking API
    BANK_API_URL = os.environ.get("BANK_API_URL", "https://api.businessonline.ge/api")
    BANK_TOKEN_URL = os.environ.get(
        "BANK_TOKEN_URL",
        "https://account.bog.ge/auth/realms/bog/protocol/openid-connect/token",
    )
    BANK_AUTH_URL = os.environ.get(
        "BANK_AUTH_URL",
        "https://account.bog.ge/auth/realms/bog/protocol/openid-connect/auth",
    )
    BANK_CLIENT_ID = os.environ.get("BANK_CLIENT_ID", "")
    BANK_CLIENT_SECRET = os.environ.get("BANK_CLIENT_SECRET", "")
    # Separate, more privileged credential set used only for money movement
    BANK_WITHDRAWAL_CLIENT_ID = os.environ.get("BANK_WITHDRAWAL_CLIENT_ID", "")
    BANK_WITHDRAWAL_CLIENT_SECRET = os.environ.get("BANK_WITHDRAWAL_CLIENT_SECRET", "")
    BANK_COMPANY_IBAN = os.environ.get("BANK_COMPANY_IBAN", "")
    BANK_REDIRECT_URI = os.environ.get("BANK_REDIRECT_URI", "")
    BANK_TIMEOUT_SECONDS = float(os.environ.get("BANK_TIMEOUT_SECONDS", "30"))
    BANK_DEFAULT_BANK_CODE = os.environ.get("BANK_DEFAULT_BANK_CODE", "BAGAGE22")
    BULK_TRANSFER_LIMIT_CENTS = _int_env("BULK_TRANSFER_LIMIT_CENTS", 1_000_000)

    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@marketcore.local")

    # Scheduler loop intervals (seconds) for `flask jobs run`
    REAP_INTERVAL_SECONDS = _int_env("REAP_INTERVAL_SECONDS", 60)
    RECONCILE_INTERVAL_SECONDS = _int_env("RECONCILE_INTERVAL_SECONDS", 300)
