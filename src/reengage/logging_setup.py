# src/reengage/logging_setup.py

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Console floor per component (longest prefix wins). The log file keeps everything.
_CONSOLE_FLOORS: dict[str, int] = {
    # One line per queued/claimed job; the dispatcher summary already covers it.
    "reengage.jobs.job_queue": logging.WARNING,
    # Flag upserts for every started or completed user.
    "reengage.host": logging.WARNING,
    # Per-user "started"/"not available" lines during a scan.
    "reengage.tracking.scanner": logging.INFO,
    # Per-job outcome lines; errors and retries still show.
    "reengage.jobs.completion_job": logging.INFO,
    "reengage.jobs.reminder_job": logging.INFO,
}


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep cron output readable:
    - reengage logs pass, subject to the per-component floors above
    - smtplib/email and any other third party only at ERROR+
    - Python warnings (captured as 'py.warnings') only at ERROR+
    """

    def __init__(self, floors: dict[str, int] | None = None) -> None:
        super().__init__()
        floors = _CONSOLE_FLOORS if floors is None else floors
        # Longest prefix first so "reengage.host.sqlite_host" beats "reengage.host".
        self._floors = sorted(floors.items(), key=lambda kv: len(kv[0]), reverse=True)

    def floor_for(self, name: str) -> int:
        if not name.startswith("reengage."):
            return logging.ERROR
        for prefix, level in self._floors:
            if name == prefix or name.startswith(prefix + "."):
                return level
        return logging.NOTSET

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= self.floor_for(record.name)


def setup_logging(
    *,
    log_dir: str | Path = ".local/reengage",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> None:
    """
    Configure logging with:
    - Console handler (stderr): filtered per component
    - Rotating file handler: full logs; `reengage run` keeps writing for weeks

    Call this ONCE, before the first pass.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "reengage.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter())
    root.addHandler(ch)

    fh = RotatingFileHandler(str(log_file), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    logging.captureWarnings(True)
