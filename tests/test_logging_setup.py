# tests/test_logging_setup.py

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from reengage.logging_setup import _ConsoleNoiseFilter, setup_logging


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "msg", None, None)


@pytest.mark.parametrize(
    ("name", "level", "shown"),
    [
        ("reengage.jobs.dispatcher", logging.DEBUG, True),
        ("reengage.jobs.job_queue", logging.INFO, False),
        ("reengage.jobs.job_queue", logging.WARNING, True),
        ("reengage.host.sqlite_host", logging.INFO, False),
        ("reengage.host.sqlite_host", logging.ERROR, True),
        ("reengage.tracking.scanner", logging.DEBUG, False),
        ("reengage.tracking.scanner", logging.INFO, True),
        ("reengage.jobs.reminder_job", logging.WARNING, True),
        ("py.warnings", logging.WARNING, False),
        ("urllib3", logging.WARNING, False),
        ("urllib3", logging.ERROR, True),
    ],
)
def test_console_filter_floors(name: str, level: int, shown: bool) -> None:
    assert _ConsoleNoiseFilter().filter(_record(name, level)) is shown


def test_longest_prefix_wins() -> None:
    f = _ConsoleNoiseFilter({"reengage.jobs": logging.ERROR, "reengage.jobs.dispatcher": logging.DEBUG})

    assert f.floor_for("reengage.jobs.dispatcher") == logging.DEBUG
    assert f.floor_for("reengage.jobs.job_queue") == logging.ERROR
    # Prefix match is per dotted component.
    assert f.floor_for("reengage.jobsfoo") == logging.NOTSET


def test_setup_logging_writes_rotating_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging(log_dir=tmp_path / "logs", max_bytes=1024, backup_count=1)
        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1

        logging.getLogger("reengage.jobs.job_queue").debug("queued job 1")
        file_handlers[0].flush()

        assert "queued job 1" in (tmp_path / "logs" / "reengage.log").read_text(encoding="utf-8")
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)
        logging.captureWarnings(False)
