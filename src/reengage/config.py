# src/reengage/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- Nothing required at import time: every value has a local-friendly default.
- SMTP is optional; without a host, mail is written to the log instead.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "REENGAGE"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path
    host_db_path: Path

    # ---- Scanner ----
    process_visible_courses_only: bool
    ignore_category_visibility: bool

    # ---- Notifications ----
    stale_grace_seconds: float

    # ---- Cron / dispatch ----
    cron_interval_seconds: float
    retry_delay_seconds: float
    max_attempts: int
    claim_lease_seconds: float
    dispatch_batch_limit: int

    # ---- SMTP (optional) ----
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_from: str
    smtp_use_ssl: bool

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "reengage") or "reengage"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/reengage"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "reengage.sqlite3")
        host_db_path = _env_path(_k("HOST_DB_PATH"), data_dir / "host.sqlite3")

        smtp_use_ssl = _env_bool(_k("SMTP_USE_SSL"), False)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            db_path=db_path,
            host_db_path=host_db_path,
            process_visible_courses_only=_env_bool(_k("PROCESS_VISIBLE_COURSES_ONLY"), False),
            ignore_category_visibility=_env_bool(_k("IGNORE_CATEGORY_VISIBILITY"), False),
            # Two days: reminders that were due longer ago than this are not sent.
            stale_grace_seconds=_env_float(_k("STALE_GRACE_SECONDS"), 172800.0),
            cron_interval_seconds=_env_float(_k("CRON_INTERVAL_SECONDS"), 60.0),
            retry_delay_seconds=_env_float(_k("RETRY_DELAY_SECONDS"), 300.0),
            max_attempts=_env_int(_k("MAX_ATTEMPTS"), 5),
            claim_lease_seconds=_env_float(_k("CLAIM_LEASE_SECONDS"), 3600.0),
            dispatch_batch_limit=_env_int(_k("DISPATCH_BATCH_LIMIT"), 100),
            smtp_host=_env(_k("SMTP_HOST"), "").strip(),
            smtp_port=_env_int(_k("SMTP_PORT"), 465 if smtp_use_ssl else 587),
            smtp_username=_env(_k("SMTP_USERNAME"), "").strip(),
            smtp_password=_env(_k("SMTP_PASSWORD"), ""),
            smtp_from=_env(_k("SMTP_FROM"), "").strip(),
            smtp_use_ssl=smtp_use_ssl,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
