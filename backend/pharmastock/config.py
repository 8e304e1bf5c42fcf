# backend/pharmastock/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pharmastock.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///pharmastock.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Lots expiring within this many days report NEAR_EXPIRY
    NEAR_EXPIRY_ALERT_DAYS = int(os.environ.get("NEAR_EXPIRY_ALERT_DAYS", "30"))

    # FEFO plans skip lots whose expiration date has already passed
    ALLOCATION_EXCLUDE_EXPIRED = _env_bool("ALLOCATION_EXCLUDE_EXPIRED", True)

    # Two-scan verification sessions
    SCAN_SESSION_TTL_SECONDS = int(os.environ.get("SCAN_SESSION_TTL_SECONDS", "300"))
    SCAN_SESSION_SWEEP_SECONDS = int(os.environ.get("SCAN_SESSION_SWEEP_SECONDS", "60"))
    SCAN_SESSION_SWEEPER_ENABLED = _env_bool("SCAN_SESSION_SWEEPER_ENABLED", True)

    # DEV only: exposes the offline envelope generator
    ENABLE_DEMO_ENDPOINTS = _env_bool("ENABLE_DEMO_ENDPOINTS", False)
