# src/reengage/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs one of:
- cron: a single pass (scan + due jobs), for an external scheduler,
- run: the polling loop until SIGINT/SIGTERM,
- status: a user's progress on one activity,
- reset-course: drop all tracking for a course.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import threading
from datetime import datetime

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..core.models import EmailMode
from ..core.state import AppState
from ..jobs.dispatcher import run_cron_loop, run_cron_pass
from ..jobs.job_models import course_group_key
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reengage", description="Course reengagement tracking")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("cron", help="run one scan + dispatch pass and exit")

    run_p = sub.add_parser("run", help="run passes on an interval until stopped")
    run_p.add_argument("--interval", type=float, default=None, help="seconds between passes")

    status_p = sub.add_parser("status", help="show a user's progress on an activity")
    status_p.add_argument("activity_id", type=int)
    status_p.add_argument("user_id", type=int)

    reset_p = sub.add_parser("reset-course", help="delete all tracking data and queued jobs of a course")
    reset_p.add_argument("course_id", type=int)

    return parser


def cmd_cron(state: AppState) -> int:
    report = run_cron_pass(state)
    scan = report.scan
    dispatch = report.dispatch
    print(
        f"released={report.released_claims} "
        f"started={scan.users_started if scan else 0} "
        f"jobs={dispatch.claimed if dispatch else 0} "
        f"outcomes={dict(dispatch.outcomes) if dispatch else {}}"
    )
    return 0


def cmd_status(state: AppState, activity_id: int, user_id: int) -> int:
    activity = state.store.get_activity(activity_id)
    if activity is None:
        print(f"Activity {activity_id} not found")
        return 1

    progress = state.store.find_progress(activity_id, user_id)
    if progress is None:
        flag = state.host.get_completion_flag(activity.module_id, user_id)
        if flag is not None and flag.state.is_complete:
            print(f"{activity.name}: completed on {_fmt_ts(flag.time_modified)}")
        else:
            print(f"{activity.name}: not tracked")
        return 0

    if progress.completed:
        print(f"{activity.name}: completed")
        return 0

    print(f"{activity.name}: in progress")
    print(f"  completion due: {_fmt_ts(progress.completion_due_at)}")
    if activity.email_mode is EmailMode.ON_SCHEDULE:
        print(f"  next reminder:  {_fmt_ts(progress.next_reminder_at)}")
        print(f"  reminders sent: {progress.reminders_sent}/{activity.reminder_count}")
    return 0


def cmd_reset_course(state: AppState, course_id: int) -> int:
    removed = state.store.reset_course(course_id)
    dropped = state.queue.delete_group(course_group_key(course_id))
    print(f"Course {course_id}: removed {removed} progress record(s), {dropped} queued job(s)")
    return 0


async def _run_until_stopped(state: AppState, stop: threading.Event, interval: float | None) -> None:
    task = asyncio.create_task(run_cron_loop(state, interval_seconds=interval))
    try:
        while not stop.is_set():
            await asyncio.sleep(0.5)
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


def cmd_run(state: AppState, interval: float | None) -> int:
    # Use an Event so the signal handler only flips a flag.
    stop_main = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop_main.set()

    try:
        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
    except (ValueError, OSError):
        # Not in the main thread, or the platform lacks SIGTERM.
        logger.debug("Signal handlers not installed", exc_info=True)

    logger.info("Running cron loop. Press Ctrl+C to stop.")
    asyncio.run(_run_until_stopped(state, stop_main, interval))
    return 0


def _shutdown(state: AppState) -> None:
    """Close stores (they use short-lived sqlite connections; this is a formality)."""
    for name in ("store", "queue", "host"):
        closer = getattr(getattr(state, name, None), "close", None)
        if closer is None:
            continue
        try:
            closer()
        except Exception:
            logger.debug("%s close failed.", name, exc_info=True)


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s %s...", settings.app_name, args.command)
    state = create_initial_state(settings=settings)

    try:
        if args.command == "cron":
            return cmd_cron(state)
        if args.command == "run":
            return cmd_run(state, args.interval)
        if args.command == "status":
            return cmd_status(state, args.activity_id, args.user_id)
        if args.command == "reset-course":
            return cmd_reset_course(state, args.course_id)
        return 2
    finally:
        _shutdown(state)
        logger.info("Bye.")


if __name__ == "__main__":
    raise SystemExit(main())
