# src/reengage/tracking/store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from ..core.models import ActivityDefinition, EmailMode, ProgressRecord, RecipientMode
from ..errors import DuplicateProgress, PersistenceFailure

logger = logging.getLogger(__name__)


class ReengageStore:
    """
    SQLite store for activity definitions and per-user progress records.

    Invariants:
    - at most one progress row per (activity_id, user_id) (UNIQUE index),
    - deleting an activity deletes its progress rows.

    Writes raise PersistenceFailure when SQLite fails; writes that target a row
    which no longer exists return False instead.

    Thread-safety:
    - each operation opens its own SQLite connection (no shared cursors).
    """

    def __init__(self, db_path: str | Path = "reengage.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

        try:
            total = self.count_progress()
        except sqlite3.Error:
            total = -1
        logger.info("ReengageStore ready db=%s in_progress=%s", self._db_path, total)

    def close(self) -> None:
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextlib.contextmanager
    def _write(self, what: str) -> Iterator[sqlite3.Connection]:
        """Connection for a single write transaction; SQLite errors become PersistenceFailure."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"{what}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceFailure(f"{what}: {exc}") from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS activities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    module_id INTEGER NOT NULL,
                    course_id INTEGER NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    duration INTEGER NOT NULL,
                    email_mode TEXT NOT NULL DEFAULT 'never',
                    reminder_count INTEGER NOT NULL DEFAULT 1,
                    reminder_delay INTEGER NOT NULL DEFAULT 0,
                    suppress_target_module_id INTEGER,
                    recipient_mode TEXT NOT NULL DEFAULT 'user',
                    third_party_emails TEXT NOT NULL DEFAULT '[]',
                    email_subject TEXT NOT NULL DEFAULT '',
                    email_content TEXT NOT NULL DEFAULT '',
                    email_subject_manager TEXT NOT NULL DEFAULT '',
                    email_content_manager TEXT NOT NULL DEFAULT '',
                    email_subject_third_party TEXT NOT NULL DEFAULT '',
                    email_content_third_party TEXT NOT NULL DEFAULT '',
                    reminder_deadline REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS progress (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    activity_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    completion_due_at REAL NOT NULL,
                    next_reminder_at REAL,
                    reminders_sent INTEGER NOT NULL DEFAULT 0,
                    completed INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_progress_activity_user ON progress(activity_id, user_id)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_activities_course ON activities(course_id)")
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_activity(row: sqlite3.Row) -> ActivityDefinition:
        try:
            emails = json.loads(row["third_party_emails"] or "[]")
        except ValueError:
            emails = []
        return ActivityDefinition(
            id=int(row["id"]),
            module_id=int(row["module_id"]),
            course_id=int(row["course_id"]),
            name=str(row["name"] or ""),
            duration=int(row["duration"]),
            email_mode=EmailMode.from_db(row["email_mode"]),
            reminder_count=int(row["reminder_count"]),
            reminder_delay=int(row["reminder_delay"]),
            suppress_target_module_id=row["suppress_target_module_id"] or None,
            recipient_mode=RecipientMode.from_db(row["recipient_mode"]),
            third_party_emails=[str(e) for e in emails if isinstance(e, str)],
            email_subject=row["email_subject"],
            email_content=row["email_content"],
            email_subject_manager=row["email_subject_manager"],
            email_content_manager=row["email_content_manager"],
            email_subject_third_party=row["email_subject_third_party"],
            email_content_third_party=row["email_content_third_party"],
            reminder_deadline=(
                float(row["reminder_deadline"]) if row["reminder_deadline"] is not None else None
            ),
        )

    @staticmethod
    def _row_to_progress(row: sqlite3.Row) -> ProgressRecord:
        return ProgressRecord(
            id=int(row["id"]),
            activity_id=int(row["activity_id"]),
            user_id=int(row["user_id"]),
            completion_due_at=float(row["completion_due_at"]),
            next_reminder_at=float(row["next_reminder_at"]) if row["next_reminder_at"] is not None else None,
            reminders_sent=int(row["reminders_sent"] or 0),
            completed=bool(row["completed"]),
        )

    @staticmethod
    def _activity_params(activity: ActivityDefinition) -> dict[str, Any]:
        return {
            "module_id": int(activity.module_id),
            "course_id": int(activity.course_id),
            "name": activity.name,
            "duration": int(activity.duration),
            "email_mode": activity.email_mode.value,
            "reminder_count": int(activity.reminder_count),
            "reminder_delay": int(activity.reminder_delay),
            # No suppression target means "never suppress".
            "suppress_target_module_id": activity.suppress_target_module_id or None,
            "recipient_mode": activity.recipient_mode.value,
            "third_party_emails": json.dumps(list(activity.third_party_emails)),
            "email_subject": activity.email_subject,
            "email_content": activity.email_content,
            "email_subject_manager": activity.email_subject_manager,
            "email_content_manager": activity.email_content_manager,
            "email_subject_third_party": activity.email_subject_third_party,
            "email_content_third_party": activity.email_content_third_party,
            "reminder_deadline": activity.reminder_deadline,
        }

    # ---- activities ----

    def add_activity(self, activity: ActivityDefinition) -> int:
        """Insert a definition; activity.id is ignored and the new id returned."""
        if activity.duration < 0:
            raise ValueError("duration must be >= 0")
        params = self._activity_params(activity)
        now = time.time()
        cols = ", ".join([*params.keys(), "created_at", "updated_at"])
        marks = ", ".join(["?"] * (len(params) + 2))
        with self._write("add_activity") as conn:
            cur = conn.execute(
                f"INSERT INTO activities({cols}) VALUES ({marks})",
                (*params.values(), now, now),
            )
            rowid = cur.lastrowid
        if rowid is None:
            raise PersistenceFailure("SQLite did not return lastrowid for activity insert")
        logger.info("Activity added id=%s module=%s course=%s", rowid, activity.module_id, activity.course_id)
        return int(rowid)

    def update_activity(self, activity: ActivityDefinition) -> bool:
        params = self._activity_params(activity)
        assignments = ", ".join(f"{k} = ?" for k in params)
        with self._write("update_activity") as conn:
            cur = conn.execute(
                f"UPDATE activities SET {assignments}, updated_at = ? WHERE id = ?",
                (*params.values(), time.time(), int(activity.id)),
            )
            return cur.rowcount == 1

    def delete_activity(self, activity_id: int) -> bool:
        """Delete a definition and every progress record that belongs to it."""
        with self._write("delete_activity") as conn:
            conn.execute("DELETE FROM progress WHERE activity_id = ?", (int(activity_id),))
            cur = conn.execute("DELETE FROM activities WHERE id = ?", (int(activity_id),))
            deleted = cur.rowcount == 1
        if deleted:
            logger.info("Activity deleted id=%s (progress records removed)", activity_id)
        return deleted

    def get_activity(self, activity_id: int) -> ActivityDefinition | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM activities WHERE id = ?", (int(activity_id),)).fetchone()
            return self._row_to_activity(row) if row else None
        finally:
            conn.close()

    def list_activities(self) -> list[ActivityDefinition]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM activities ORDER BY id ASC").fetchall()
            return [self._row_to_activity(r) for r in rows]
        finally:
            conn.close()

    # ---- progress ----

    def count_progress(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM progress").fetchone()
            return int(n)
        finally:
            conn.close()

    def create_progress(
        self,
        *,
        activity_id: int,
        user_id: int,
        completion_due_at: float,
        next_reminder_at: float | None,
    ) -> ProgressRecord:
        try:
            with self._write("create_progress") as conn:
                cur = conn.execute(
                    """
                    INSERT INTO progress(activity_id, user_id, completion_due_at, next_reminder_at,
                                         reminders_sent, completed)
                    VALUES (?, ?, ?, ?, 0, 0)
                    """,
                    (int(activity_id), int(user_id), float(completion_due_at), next_reminder_at),
                )
                rowid = cur.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateProgress(
                f"progress already exists for activity={activity_id} user={user_id}"
            ) from exc
        if rowid is None:
            raise PersistenceFailure("SQLite did not return lastrowid for progress insert")
        return ProgressRecord(
            id=int(rowid),
            activity_id=int(activity_id),
            user_id=int(user_id),
            completion_due_at=float(completion_due_at),
            next_reminder_at=next_reminder_at,
        )

    def get_progress(self, progress_id: int) -> ProgressRecord | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM progress WHERE id = ?", (int(progress_id),)).fetchone()
            return self._row_to_progress(row) if row else None
        finally:
            conn.close()

    def find_progress(self, activity_id: int, user_id: int) -> ProgressRecord | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM progress WHERE activity_id = ? AND user_id = ?",
                (int(activity_id), int(user_id)),
            ).fetchone()
            return self._row_to_progress(row) if row else None
        finally:
            conn.close()

    def list_progress(self, activity_id: int | None = None) -> list[ProgressRecord]:
        conn = self._get_conn()
        try:
            if activity_id is None:
                rows = conn.execute("SELECT * FROM progress ORDER BY id ASC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM progress WHERE activity_id = ? ORDER BY id ASC",
                    (int(activity_id),),
                ).fetchall()
            return [self._row_to_progress(r) for r in rows]
        finally:
            conn.close()

    def tracked_user_ids(self, activity_id: int) -> set[int]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT user_id FROM progress WHERE activity_id = ?", (int(activity_id),)
            ).fetchall()
            return {int(r["user_id"]) for r in rows}
        finally:
            conn.close()

    def mark_completed(self, progress_id: int) -> bool:
        with self._write("mark_completed") as conn:
            cur = conn.execute("UPDATE progress SET completed = 1 WHERE id = ?", (int(progress_id),))
            return cur.rowcount == 1

    def record_reminder_sent(
        self,
        progress_id: int,
        *,
        reminders_sent: int,
        next_reminder_at: float | None,
    ) -> bool:
        """Persist the reminder counter, and next_reminder_at when one is given."""
        with self._write("record_reminder_sent") as conn:
            if next_reminder_at is None:
                cur = conn.execute(
                    "UPDATE progress SET reminders_sent = ? WHERE id = ?",
                    (int(reminders_sent), int(progress_id)),
                )
            else:
                cur = conn.execute(
                    "UPDATE progress SET reminders_sent = ?, next_reminder_at = ? WHERE id = ?",
                    (int(reminders_sent), float(next_reminder_at), int(progress_id)),
                )
            return cur.rowcount == 1

    def set_next_reminder(self, progress_id: int, next_reminder_at: float) -> bool:
        with self._write("set_next_reminder") as conn:
            cur = conn.execute(
                "UPDATE progress SET next_reminder_at = ? WHERE id = ?",
                (float(next_reminder_at), int(progress_id)),
            )
            return cur.rowcount == 1

    def delete_progress(self, progress_id: int) -> bool:
        with self._write("delete_progress") as conn:
            cur = conn.execute("DELETE FROM progress WHERE id = ?", (int(progress_id),))
            return cur.rowcount == 1

    def reset_course(self, course_id: int) -> int:
        """Delete every progress record of every activity in the course."""
        with self._write("reset_course") as conn:
            cur = conn.execute(
                "DELETE FROM progress WHERE activity_id IN (SELECT id FROM activities WHERE course_id = ?)",
                (int(course_id),),
            )
            removed = int(cur.rowcount)
        logger.info("Course %s reset: %s progress record(s) removed", course_id, removed)
        return removed
