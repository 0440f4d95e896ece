# backend/schoolbilling/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///schoolbilling.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Billing rates (cents). Explicit arguments to the billing calls win.
    BILLING_GROUP_RATE_CENTS = _int_env("BILLING_GROUP_RATE_CENTS", 2500)
    BILLING_INDIVIDUAL_RATE_CENTS = _int_env("BILLING_INDIVIDUAL_RATE_CENTS", 4500)
    BILLING_STANDARD_TERM_WEEKS = _int_env("BILLING_STANDARD_TERM_WEEKS", 10)
    BILLING_DEFAULT_DUE_DAYS = _int_env("BILLING_DEFAULT_DUE_DAYS", 14)

    # Payment processor webhook signing secret
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    PAYMENT_RETRY_ATTEMPTS = _int_env("PAYMENT_RETRY_ATTEMPTS", 3)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
