# src/reengage/jobs/job_queue.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ..errors import PersistenceFailure
from .job_models import JobStatus, QueuedJob

logger = logging.getLogger(__name__)


class JobQueue:
    """
    SQLite-backed deferred job queue.

    Delivery is at-least-once:
    - a job is only handed out once its due_at has passed,
    - try_claim is a single conditional UPDATE, so exactly one worker wins a job,
    - a claimed job that is never acknowledged is re-delivered after the lease expires
      (see release_stale_claims), so consumers must be idempotent.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "reengage.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_jobs()
        except sqlite3.Error:
            total = -1
        logger.info("JobQueue ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS queued_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    due_at REAL NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    group_key TEXT,
                    created_at REAL NOT NULL,
                    claimed_at REAL
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_due ON queued_jobs(status, due_at, id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_group ON queued_jobs(group_key)")
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _payload_to_str(payload: dict[str, Any] | None) -> str:
        if not payload:
            return "{}"
        return json.dumps(payload, ensure_ascii=False)

    @staticmethod
    def _str_to_payload(s: str | None) -> dict[str, Any]:
        if not s:
            return {}
        try:
            val = json.loads(s)
            return val if isinstance(val, dict) else {}
        except ValueError:
            logger.warning("Undecodable job payload; treating as empty.")
            return {}

    def _row_to_job(self, row: sqlite3.Row) -> QueuedJob:
        return QueuedJob(
            id=int(row["id"]),
            kind=str(row["kind"]),
            due_at=float(row["due_at"]),
            payload=self._str_to_payload(row["payload"]),
            status=JobStatus.from_db(row["status"]),
            attempts=int(row["attempts"] or 0),
            group_key=row["group_key"],
            created_at=float(row["created_at"] or 0.0),
            claimed_at=float(row["claimed_at"]) if row["claimed_at"] is not None else None,
        )

    # ---- public API ----

    def count_jobs(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM queued_jobs").fetchone()
            return int(n)
        finally:
            conn.close()

    def enqueue(
        self,
        kind: str,
        due_at: float,
        payload: dict[str, Any],
        *,
        group_key: str | None = None,
    ) -> int:
        if not kind or not kind.strip():
            raise ValueError("kind is required")

        now = time.time()
        try:
            conn = self._get_conn()
            try:
                cur = conn.execute(
                    """
                    INSERT INTO queued_jobs(kind, due_at, payload, status, attempts, group_key, created_at)
                    VALUES (?, ?, ?, 'pending', 0, ?, ?)
                    """,
                    (kind.strip(), float(due_at), self._payload_to_str(payload), group_key, now),
                )
                conn.commit()
                rowid = cur.lastrowid
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"enqueue {kind} failed: {exc}") from exc

        if rowid is None:
            raise PersistenceFailure("SQLite did not return lastrowid for job insert")
        job_id = int(rowid)
        logger.debug("Job queued id=%s kind=%s due_at=%s group=%s", job_id, kind, due_at, group_key)
        return job_id

    def get(self, job_id: int) -> QueuedJob | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM queued_jobs WHERE id = ?", (int(job_id),)).fetchone()
            return self._row_to_job(row) if row else None
        finally:
            conn.close()

    def list_jobs(self, kind: str | None = None) -> list[QueuedJob]:
        conn = self._get_conn()
        try:
            if kind is None:
                rows = conn.execute("SELECT * FROM queued_jobs ORDER BY due_at ASC, id ASC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM queued_jobs WHERE kind = ? ORDER BY due_at ASC, id ASC",
                    (kind,),
                ).fetchall()
            return [self._row_to_job(r) for r in rows]
        finally:
            conn.close()

    def dispatch_due(self, now: float, *, limit: int = 100) -> Iterator[QueuedJob]:
        """
        Yield pending jobs with due_at <= now.

        Ordering: due_at ascending, then insertion order (id) for equal due times.
        The batch is read up front; callers still have to try_claim each job.
        """
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT *
                FROM queued_jobs
                WHERE status = 'pending'
                  AND due_at <= ?
                ORDER BY due_at ASC, id ASC
                    LIMIT ?
                """,
                (float(now), int(limit)),
            ).fetchall()
        finally:
            conn.close()

        for row in rows:
            yield self._row_to_job(row)

    def try_claim(self, job_id: int, *, now: float | None = None) -> bool:
        """
        Atomically transitions pending -> claimed.

        Returns True if the row was claimed by this caller.
        """
        ts = time.time() if now is None else float(now)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE queued_jobs
                SET status = 'claimed', claimed_at = ?
                WHERE id = ?
                  AND status = 'pending'
                """,
                (ts, int(job_id)),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def ack(self, job_id: int) -> None:
        """Acknowledge a finished job (removes it)."""
        self.delete(job_id)

    def delete(self, job_id: int) -> bool:
        conn = self._get_conn()
        try:
            cur = conn.execute("DELETE FROM queued_jobs WHERE id = ?", (int(job_id),))
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def release(self, job_id: int, *, due_at: float) -> None:
        """Hand a claimed job back for re-delivery at due_at (counts one attempt)."""
        conn = self._get_conn()
        try:
            conn.execute(
                """
                UPDATE queued_jobs
                SET status = 'pending',
                    claimed_at = NULL,
                    attempts = attempts + 1,
                    due_at = ?
                WHERE id = ?
                """,
                (float(due_at), int(job_id)),
            )
            conn.commit()
        finally:
            conn.close()

    def release_stale_claims(self, now: float, lease_seconds: float) -> int:
        """Return jobs claimed longer than lease_seconds ago (crashed worker) to pending."""
        cutoff = float(now) - max(0.0, float(lease_seconds))
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                UPDATE queued_jobs
                SET status = 'pending',
                    claimed_at = NULL,
                    attempts = attempts + 1
                WHERE status = 'claimed'
                  AND claimed_at IS NOT NULL
                  AND claimed_at < ?
                """,
                (cutoff,),
            )
            conn.commit()
            released = int(cur.rowcount)
        finally:
            conn.close()
        if released:
            logger.warning("Released %s stale job claim(s) older than %ss", released, lease_seconds)
        return released

    def delete_group(self, group_key: str) -> int:
        conn = self._get_conn()
        try:
            cur = conn.execute("DELETE FROM queued_jobs WHERE group_key = ?", (group_key,))
            conn.commit()
            return int(cur.rowcount)
        finally:
            conn.close()
