# backend/settlement/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/settlement.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///settlement.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Secret the archive key is derived from (SHA-256 -> 256-bit AES key).
    # Falls back to SECRET_KEY like the rest of the app's derived secrets.
    ARCHIVE_ENCRYPTION_KEY = os.environ.get("ARCHIVE_ENCRYPTION_KEY")

    # Root directory for the default local object storage
    ARCHIVE_STORAGE_ROOT = os.environ.get("ARCHIVE_STORAGE_ROOT", "storage")

    # Legal retention of signed contracts
    ARCHIVE_RETENTION_YEARS = int(os.environ.get("ARCHIVE_RETENTION_YEARS", "10"))

    OTP_TTL_SECONDS = int(os.environ.get("OTP_TTL_SECONDS", "300"))

    # Row-lock acquisition retries (deadlocks, lock timeouts, stale versions)
    LOCK_RETRY_ATTEMPTS = int(os.environ.get("LOCK_RETRY_ATTEMPTS", "3"))
    LOCK_RETRY_BACKOFF = float(os.environ.get("LOCK_RETRY_BACKOFF", "0.1"))

    # Escrow timeout firing retries inside a single sweep
    TIMEOUT_FIRE_ATTEMPTS = int(os.environ.get("TIMEOUT_FIRE_ATTEMPTS", "3"))
    TIMEOUT_FIRE_BACKOFF = float(os.environ.get("TIMEOUT_FIRE_BACKOFF", "0.5"))

    # Party id that receives operational alerts (integrity violations, stuck releases)
    OPS_ALERT_RECIPIENT = os.environ.get("OPS_ALERT_RECIPIENT", "ops")
