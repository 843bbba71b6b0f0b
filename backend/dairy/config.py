# backend/dairy/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///dairy.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Pricing (money is always integer paise/cents)
    TAX_RATE_BPS = _env_int("TAX_RATE_BPS", 500)  # 5%
    DELIVERY_FEE_CENTS = _env_int("DELIVERY_FEE_CENTS", 5000)
    FREE_DELIVERY_THRESHOLD_CENTS = _env_int("FREE_DELIVERY_THRESHOLD_CENTS", 50000)

    # Route planning
    DEPOT_LATITUDE = _env_float("DEPOT_LATITUDE", 11.0168)
    DEPOT_LONGITUDE = _env_float("DEPOT_LONGITUDE", 76.9558)
    DEPOT_ADDRESS = os.environ.get("DEPOT_ADDRESS", "DairyFresh Distribution Center, Coimbatore")
    MINUTES_PER_KM = _env_float("MINUTES_PER_KM", 3.0)

    # Materialization horizon for new/edited subscriptions
    MATERIALIZE_HORIZON_DAYS = _env_int("MATERIALIZE_HORIZON_DAYS", 14)

    # Invoice due dates
    WEEKLY_INVOICE_DUE_DAYS = _env_int("WEEKLY_INVOICE_DUE_DAYS", 7)
    MONTHLY_INVOICE_DUE_DAYS = _env_int("MONTHLY_INVOICE_DUE_DAYS", 30)

    # Sessions
    SESSION_ABSOLUTE_TIMEOUT_HOURS = _env_int("SESSION_ABSOLUTE_TIMEOUT_HOURS", 24)
    SESSION_IDLE_TIMEOUT_HOURS = _env_int("SESSION_IDLE_TIMEOUT_HOURS", 2)


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    LOG_LEVEL = "WARNING"
