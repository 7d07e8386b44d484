# backend/boxoffice/config.py
from __future__ import annotations
import os


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.environ.get(name, default).split(",") if item.strip()]


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/boxoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///boxoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))

    CORS_ALLOWED_ORIGINS = _env_list(
        "CORS_ALLOWED_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000",
    )

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "ETB")

    # Abandoned pending orders are cancelled by `flask orders expire-pending`
    PENDING_ORDER_TTL_MINUTES = int(os.environ.get("PENDING_ORDER_TTL_MINUTES", "30"))

    # Chapa hosted checkout
    CHAPA_SECRET_KEY = os.environ.get("CHAPA_SECRET_KEY", "")
    CHAPA_BASE_URL = os.environ.get("CHAPA_BASE_URL", "https://api.chapa.co")
    CHAPA_WEBHOOK_SECRET = os.environ.get("CHAPA_WEBHOOK_SECRET", "")
    CHAPA_CALLBACK_URL = os.environ.get(
        "CHAPA_CALLBACK_URL", "http://localhost:5000/api/payments/chapa/callback"
    )
    CHAPA_RETURN_URL = os.environ.get("CHAPA_RETURN_URL", "http://localhost:3000/payment/success")
    CHAPA_TIMEOUT_SECONDS = float(os.environ.get("CHAPA_TIMEOUT_SECONDS", "10"))

    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

    # Manual (offline) payment instructions
    MANUAL_PAYMENT_INSTRUCTIONS = {
        "bank_transfer": {
            "bank_name": os.environ.get("MANUAL_BANK_NAME", "Commercial Bank of Ethiopia"),
            "account_name": os.environ.get("MANUAL_BANK_ACCOUNT_NAME", "EventEase Ltd"),
            "account_number": os.environ.get("MANUAL_BANK_ACCOUNT_NUMBER", "1000123456789"),
            "instructions": "Include your order reference when making the transfer.",
        },
        "mobile_money": {
            "provider": os.environ.get("MANUAL_MOBILE_PROVIDER", "TeleBirr"),
            "phone_number": os.environ.get("MANUAL_MOBILE_NUMBER", "+251911234567"),
            "account_name": os.environ.get("MANUAL_MOBILE_ACCOUNT_NAME", "EventEase"),
            "instructions": "Include your order reference when making the payment.",
        },
    }
