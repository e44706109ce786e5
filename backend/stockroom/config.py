# backend/stockroom/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Local durable store: SQLite file in the instance folder by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockroom.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Remote system of record (PostgREST-style). Empty URL means offline-only.
    REMOTE_URL = os.environ.get("REMOTE_URL", "")
    REMOTE_API_KEY = os.environ.get("REMOTE_API_KEY", "")
    REMOTE_TIMEOUT_SECONDS = float(os.environ.get("REMOTE_TIMEOUT_SECONDS", "10"))

    # Queue replay
    SYNC_INTERVAL_SECONDS = float(os.environ.get("SYNC_INTERVAL_SECONDS", "300"))
    SYNC_AUTOSTART = _env_bool("SYNC_AUTOSTART", False)
    START_OFFLINE = _env_bool("START_OFFLINE", not REMOTE_URL)
    TEMP_ID_PREFIX = os.environ.get("TEMP_ID_PREFIX", "temp_")

    # Periodicity alerts
    DUE_SOON_WINDOW_DAYS = int(os.environ.get("DUE_SOON_WINDOW_DAYS", "5"))

    # Queue every audit event for the remote audit_log collection
    AUDIT_MIRROR_REMOTE = _env_bool("AUDIT_MIRROR_REMOTE", True)

    EXPORT_DATE_FORMAT = os.environ.get("EXPORT_DATE_FORMAT", "%d/%m/%Y")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
