# src/reengage/jobs/dispatcher.py

from __future__ import annotations

"""
Job dispatcher and cron entry points.

A cron pass:
- returns crashed workers' claims to the queue,
- runs the enrollment scanner,
- claims and executes every due job, one at a time.

Jobs handle their own expected failures (stale references, persistence,
notification). Anything else raised by a job is treated as transient: the job
is released for another attempt after retry_delay_seconds and dropped once it
has used max_attempts.

run_cron_loop() repeats the pass on an interval; cancel the coroutine to stop it.
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from ..core.ports import Clock
from ..errors import ConfigurationError
from .job_models import JobOutcome, JobPayload, QueuedJob
from .job_queue import JobQueue

if TYPE_CHECKING:
    from ..core.state import AppState
    from ..tracking.scanner import ScanReport

logger = logging.getLogger(__name__)


class JobHandler(Protocol):
    name: str

    def run(self, payload: JobPayload, *, due_at: float) -> JobOutcome:
        ...


@dataclass(slots=True)
class DispatchReport:
    claimed: int = 0
    outcomes: Counter[str] = field(default_factory=Counter)
    retried: int = 0
    dropped: int = 0


@dataclass(slots=True)
class CronReport:
    released_claims: int = 0
    scan: ScanReport | None = None
    dispatch: DispatchReport | None = None


class JobDispatcher:
    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, JobHandler],
        *,
        clock: Clock = time.time,
        retry_delay_seconds: float = 300.0,
        max_attempts: int = 5,
        batch_limit: int = 100,
    ) -> None:
        self._queue = queue
        self._handlers = dict(handlers)
        self._clock = clock
        self._retry_s = max(1.0, float(retry_delay_seconds))
        self._max_attempts = max(1, int(max_attempts))
        self._batch_limit = max(1, int(batch_limit))

    def dispatch_due(self) -> DispatchReport:
        """Claim and run every job due now (up to batch_limit), in due order."""
        now = self._clock()
        report = DispatchReport()

        # Read the batch up front: re-armed reminders due "now" wait for the next pass.
        jobs = list(self._queue.dispatch_due(now, limit=self._batch_limit))
        for job in jobs:
            try:
                claimed = self._queue.try_claim(job.id, now=now)
            except Exception:
                logger.exception("try_claim failed job_id=%s", job.id)
                continue
            if not claimed:
                # Another worker got it.
                continue

            report.claimed += 1
            self._execute(job, now=now, report=report)

        if report.claimed:
            logger.info(
                "Dispatched %s job(s): %s retried=%s dropped=%s",
                report.claimed,
                dict(report.outcomes),
                report.retried,
                report.dropped,
            )
        return report

    def _execute(self, job: QueuedJob, *, now: float, report: DispatchReport) -> None:
        handler = self._handlers.get(job.kind)
        if handler is None:
            logger.error("Unknown job kind %r (job_id=%s); dropping", job.kind, job.id)
            self._drop(job, report)
            return

        try:
            payload = JobPayload.from_dict(job.payload)
        except (KeyError, TypeError, ValueError, ConfigurationError):
            logger.exception("Malformed payload for job_id=%s kind=%s; dropping", job.id, job.kind)
            self._drop(job, report)
            return

        try:
            outcome = handler.run(payload, due_at=job.due_at)
        except Exception:
            logger.exception(
                "%s job failed job_id=%s activity=%s progress=%s user=%s attempt=%s",
                handler.name,
                job.id,
                payload.activity_id,
                payload.progress_id,
                payload.progress.user_id,
                job.attempts + 1,
            )
            self._retry_or_drop(job, now=now, report=report)
            return

        report.outcomes[outcome.value] += 1
        try:
            self._queue.ack(job.id)
        except Exception:
            # The claim lease will hand it back; jobs are idempotent.
            logger.exception("ack failed job_id=%s", job.id)

    def _retry_or_drop(self, job: QueuedJob, *, now: float, report: DispatchReport) -> None:
        if job.attempts + 1 >= self._max_attempts:
            logger.error("Job %s used %s attempt(s); dropping", job.id, job.attempts + 1)
            self._drop(job, report)
            return
        try:
            self._queue.release(job.id, due_at=now + self._retry_s)
        except Exception:
            logger.exception("release(backoff) failed job_id=%s", job.id)
            return
        report.retried += 1

    def _drop(self, job: QueuedJob, report: DispatchReport) -> None:
        try:
            self._queue.delete(job.id)
        except Exception:
            logger.exception("delete failed job_id=%s", job.id)
            return
        report.dropped += 1


def run_cron_pass(state: AppState) -> CronReport:
    """One full pass. Every stage is isolated: a failure is logged and the next stage still runs."""
    settings = state.settings
    report = CronReport()

    try:
        report.released_claims = state.queue.release_stale_claims(
            state.clock(), float(settings.claim_lease_seconds)
        )
    except Exception:
        logger.exception("release_stale_claims failed")

    try:
        report.scan = state.scanner.scan()
    except Exception:
        logger.exception("Enrollment scan failed")

    try:
        report.dispatch = state.dispatcher.dispatch_due()
    except Exception:
        logger.exception("Job dispatch failed")

    return report


async def run_cron_loop(state: AppState, *, interval_seconds: float | None = None) -> None:
    """
    Polling loop around run_cron_pass().

    The pass is blocking (SQLite, SMTP) so it runs in a worker thread.
    To stop the loop, cancel the coroutine/task.
    """
    if interval_seconds is None:
        interval_seconds = float(state.settings.cron_interval_seconds)
    sleep_s = max(0.1, float(interval_seconds))

    logger.info("Cron loop started interval=%ss", sleep_s)
    while True:
        try:
            await asyncio.to_thread(run_cron_pass, state)
        except Exception:
            logger.exception("Cron pass crashed")
        await asyncio.sleep(sleep_s)
