# src/reengage/host/sqlite_host.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path

from ..core.models import Category, CompletionFlag, CompletionState, CourseInfo, UserProfile

logger = logging.getLogger(__name__)


class SqliteCourseHost:
    """
    Reference CourseHost backed by SQLite.

    Real deployments plug the scanner and the jobs into their LMS; this host
    models the subset of LMS state the core reads:
    - users, categories, courses, course modules,
    - enrolments + per-enrolment capabilities,
    - availability: a module may require another module to be complete first,
    - completion flags (one per module/user) + an in-process completion cache,
    - course groups, managers and custom profile fields (for templating),
    - "completion updated" events (stored, so they can be inspected).

    The seed_* helpers exist for demos and tests.
    """

    supports_managers = True

    def __init__(self, db_path: str | Path = "host.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        self._cache_lock = threading.Lock()
        # (user_id, course_id) -> {module_id: state}
        self._completion_cache: dict[tuple[int, int], dict[int, CompletionState]] = {}
        logger.info("SqliteCourseHost ready db=%s", self._db_path)

    def close(self) -> None:
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
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY,
                    email TEXT NOT NULL,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',
                    city TEXT NOT NULL DEFAULT '',
                    institution TEXT NOT NULL DEFAULT '',
                    department TEXT NOT NULL DEFAULT '',
                    confirmed INTEGER NOT NULL DEFAULT 1,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    profile_fields TEXT NOT NULL DEFAULT '{}'
                );
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY,
                    parent_id INTEGER,
                    visible INTEGER NOT NULL DEFAULT 1
                );
                CREATE TABLE IF NOT EXISTS courses (
                    id INTEGER PRIMARY KEY,
                    short_name TEXT NOT NULL,
                    full_name TEXT NOT NULL,
                    visible INTEGER NOT NULL DEFAULT 1,
                    category_id INTEGER
                );
                CREATE TABLE IF NOT EXISTS course_modules (
                    id INTEGER PRIMARY KEY,
                    course_id INTEGER NOT NULL,
                    deletion_in_progress INTEGER NOT NULL DEFAULT 0,
                    requires_module_id INTEGER
                );
                CREATE TABLE IF NOT EXISTS enrolments (
                    course_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    capabilities TEXT NOT NULL DEFAULT '[]',
                    PRIMARY KEY (course_id, user_id)
                );
                CREATE TABLE IF NOT EXISTS completion_flags (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    module_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    state INTEGER NOT NULL DEFAULT 0,
                    time_modified REAL NOT NULL,
                    UNIQUE (module_id, user_id)
                );
                CREATE TABLE IF NOT EXISTS course_groups (
                    course_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS managers (
                    user_id INTEGER NOT NULL,
                    manager_id INTEGER NOT NULL,
                    PRIMARY KEY (user_id, manager_id)
                );
                CREATE TABLE IF NOT EXISTS completion_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    flag_id INTEGER NOT NULL,
                    module_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    created_at REAL NOT NULL
                );
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _module_course_id(self, conn: sqlite3.Connection, module_id: int) -> int | None:
        row = conn.execute("SELECT course_id FROM course_modules WHERE id = ?", (int(module_id),)).fetchone()
        return int(row["course_id"]) if row else None

    @staticmethod
    def _row_to_flag(row: sqlite3.Row) -> CompletionFlag:
        return CompletionFlag(
            id=int(row["id"]),
            module_id=int(row["module_id"]),
            user_id=int(row["user_id"]),
            state=CompletionState(int(row["state"])),
            time_modified=float(row["time_modified"]),
        )

    # ---- users / enrolment ----

    def is_enrolled_with_capability(self, module_id: int, user_id: int, capability: str) -> bool:
        conn = self._get_conn()
        try:
            course_id = self._module_course_id(conn, module_id)
            if course_id is None:
                return False
            row = conn.execute(
                "SELECT active, capabilities FROM enrolments WHERE course_id = ? AND user_id = ?",
                (course_id, int(user_id)),
            ).fetchone()
        finally:
            conn.close()
        if not row or not row["active"]:
            return False
        return capability in json.loads(row["capabilities"] or "[]")

    def list_enrolled_user_ids(self, module_id: int, capability: str) -> list[int]:
        """Active enrolments holding `capability`, excluding deleted users."""
        conn = self._get_conn()
        try:
            course_id = self._module_course_id(conn, module_id)
            if course_id is None:
                return []
            rows = conn.execute(
                """
                SELECT e.user_id, e.capabilities
                FROM enrolments e
                JOIN users u ON u.id = e.user_id
                WHERE e.course_id = ?
                  AND e.active = 1
                  AND u.deleted = 0
                ORDER BY e.user_id ASC
                """,
                (course_id,),
            ).fetchall()
        finally:
            conn.close()
        return [int(r["user_id"]) for r in rows if capability in json.loads(r["capabilities"] or "[]")]

    def is_user_deleted(self, user_id: int) -> bool:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT deleted FROM users WHERE id = ?", (int(user_id),)).fetchone()
            return row is None or bool(row["deleted"])
        finally:
            conn.close()

    def get_user(self, user_id: int) -> UserProfile | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (int(user_id),)).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        try:
            fields = json.loads(row["profile_fields"] or "{}")
        except ValueError:
            fields = {}
        return UserProfile(
            id=int(row["id"]),
            email=str(row["email"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            city=row["city"],
            institution=row["institution"],
            department=row["department"],
            confirmed=bool(row["confirmed"]),
            deleted=bool(row["deleted"]),
            profile_fields={str(k): str(v) for k, v in fields.items()} if isinstance(fields, dict) else {},
        )

    def get_manager_ids(self, user_id: int) -> list[int]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT manager_id FROM managers WHERE user_id = ? ORDER BY manager_id ASC",
                (int(user_id),),
            ).fetchall()
            return [int(r["manager_id"]) for r in rows]
        finally:
            conn.close()

    def list_user_groups(self, course_id: int, user_id: int) -> list[str]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT name FROM course_groups WHERE course_id = ? AND user_id = ? ORDER BY name ASC",
                (int(course_id), int(user_id)),
            ).fetchall()
            return [str(r["name"]) for r in rows]
        finally:
            conn.close()

    # ---- course structure / availability ----

    def evaluate_availability(self, module_id: int, user_id: int) -> tuple[bool, str]:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT course_id, requires_module_id FROM course_modules WHERE id = ?", (int(module_id),)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return False, f"module {module_id} does not exist"
        required = row["requires_module_id"]
        if not required:
            return True, ""
        # Reads through the completion cache, like the rest of the host's availability checks.
        states = self.cached_completion_states(user_id, int(row["course_id"]))
        state = states.get(int(required))
        if state is not None and state.is_complete:
            return True, ""
        return False, f"requires completion of module {required}"

    def is_module_deleting(self, module_id: int) -> bool:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT deletion_in_progress FROM course_modules WHERE id = ?", (int(module_id),)
            ).fetchone()
            return row is None or bool(row["deletion_in_progress"])
        finally:
            conn.close()

    def get_course(self, course_id: int) -> CourseInfo | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM courses WHERE id = ?", (int(course_id),)).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return CourseInfo(
            id=int(row["id"]),
            short_name=row["short_name"],
            full_name=row["full_name"],
            visible=bool(row["visible"]),
            category_id=int(row["category_id"]) if row["category_id"] is not None else None,
        )

    def get_category(self, category_id: int) -> Category | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (int(category_id),)).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return Category(
            id=int(row["id"]),
            parent_id=int(row["parent_id"]) if row["parent_id"] else None,
            visible=bool(row["visible"]),
        )

    # ---- completion tracking ----

    def get_completion_flag(self, module_id: int, user_id: int) -> CompletionFlag | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM completion_flags WHERE module_id = ? AND user_id = ?",
                (int(module_id), int(user_id)),
            ).fetchone()
            return self._row_to_flag(row) if row else None
        finally:
            conn.close()

    def upsert_completion_flag(
        self,
        module_id: int,
        user_id: int,
        state: CompletionState,
        *,
        now: float,
    ) -> CompletionFlag:
        conn = self._get_conn()
        try:
            existing = conn.execute(
                "SELECT id FROM completion_flags WHERE module_id = ? AND user_id = ?",
                (int(module_id), int(user_id)),
            ).fetchone()
            if existing is None:
                logger.info(
                    "Creating completion flag module=%s user=%s state=%s", module_id, user_id, state.name
                )
                conn.execute(
                    "INSERT INTO completion_flags(module_id, user_id, state, time_modified) VALUES (?, ?, ?, ?)",
                    (int(module_id), int(user_id), int(state), float(now)),
                )
            else:
                logger.info(
                    "Updating completion flag module=%s user=%s state=%s", module_id, user_id, state.name
                )
                conn.execute(
                    "UPDATE completion_flags SET state = ?, time_modified = ? WHERE id = ?",
                    (int(state), float(now), int(existing["id"])),
                )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM completion_flags WHERE module_id = ? AND user_id = ?",
                (int(module_id), int(user_id)),
            ).fetchone()
            return self._row_to_flag(row)
        finally:
            conn.close()

    def cached_completion_states(self, user_id: int, course_id: int) -> dict[int, CompletionState]:
        """Per-course completion states for a user, cached until invalidated."""
        key = (int(user_id), int(course_id))
        with self._cache_lock:
            cached = self._completion_cache.get(key)
        if cached is not None:
            return dict(cached)
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """
                SELECT f.module_id, f.state
                FROM completion_flags f
                JOIN course_modules m ON m.id = f.module_id
                WHERE f.user_id = ? AND m.course_id = ?
                """,
                key,
            ).fetchall()
        finally:
            conn.close()
        states = {int(r["module_id"]): CompletionState(int(r["state"])) for r in rows}
        with self._cache_lock:
            self._completion_cache[key] = states
        return dict(states)

    def invalidate_completion_cache(self, user_id: int, course_id: int) -> None:
        with self._cache_lock:
            self._completion_cache.pop((int(user_id), int(course_id)), None)

    def emit_completion_updated(self, flag_id: int, module_id: int, user_id: int) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "INSERT INTO completion_events(flag_id, module_id, user_id, created_at) VALUES (?, ?, ?, ?)",
                (int(flag_id), int(module_id), int(user_id), time.time()),
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug("completion_updated flag=%s module=%s user=%s", flag_id, module_id, user_id)

    def list_completion_events(self, user_id: int | None = None) -> list[tuple[int, int, int]]:
        """(flag_id, module_id, user_id) tuples in emission order."""
        conn = self._get_conn()
        try:
            if user_id is None:
                rows = conn.execute("SELECT * FROM completion_events ORDER BY id ASC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM completion_events WHERE user_id = ? ORDER BY id ASC", (int(user_id),)
                ).fetchall()
            return [(int(r["flag_id"]), int(r["module_id"]), int(r["user_id"])) for r in rows]
        finally:
            conn.close()

    # ---- seeding (demos / tests) ----

    def seed_category(self, category_id: int, *, parent_id: int | None = None, visible: bool = True) -> None:
        self._exec(
            "INSERT OR REPLACE INTO categories(id, parent_id, visible) VALUES (?, ?, ?)",
            (category_id, parent_id, int(visible)),
        )

    def seed_course(
        self,
        course_id: int,
        *,
        short_name: str = "",
        full_name: str = "",
        visible: bool = True,
        category_id: int | None = None,
    ) -> None:
        self._exec(
            "INSERT OR REPLACE INTO courses(id, short_name, full_name, visible, category_id) VALUES (?, ?, ?, ?, ?)",
            (course_id, short_name or f"C{course_id}", full_name or f"Course {course_id}", int(visible), category_id),
        )

    def seed_module(
        self,
        module_id: int,
        *,
        course_id: int,
        requires_module_id: int | None = None,
        deletion_in_progress: bool = False,
    ) -> None:
        self._exec(
            "INSERT OR REPLACE INTO course_modules(id, course_id, deletion_in_progress, requires_module_id) "
            "VALUES (?, ?, ?, ?)",
            (module_id, course_id, int(deletion_in_progress), requires_module_id),
        )

    def seed_user(
        self,
        user_id: int,
        *,
        email: str | None = None,
        first_name: str = "",
        last_name: str = "",
        city: str = "",
        institution: str = "",
        department: str = "",
        confirmed: bool = True,
        deleted: bool = False,
        profile_fields: dict[str, str] | None = None,
    ) -> None:
        self._exec(
            """
            INSERT OR REPLACE INTO users(id, email, first_name, last_name, city, institution, department,
                                         confirmed, deleted, profile_fields)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                email or f"user{user_id}@example.com",
                first_name,
                last_name,
                city,
                institution,
                department,
                int(confirmed),
                int(deleted),
                json.dumps(profile_fields or {}),
            ),
        )

    def set_user_deleted(self, user_id: int, deleted: bool = True) -> None:
        self._exec("UPDATE users SET deleted = ? WHERE id = ?", (int(deleted), user_id))

    def enrol(self, course_id: int, user_id: int, *, capabilities: list[str] | None = None) -> None:
        caps = ["start"] if capabilities is None else capabilities
        self._exec(
            "INSERT OR REPLACE INTO enrolments(course_id, user_id, active, capabilities) VALUES (?, ?, 1, ?)",
            (course_id, user_id, json.dumps(caps)),
        )

    def unenrol(self, course_id: int, user_id: int) -> None:
        self._exec("DELETE FROM enrolments WHERE course_id = ? AND user_id = ?", (course_id, user_id))

    def add_group_member(self, course_id: int, user_id: int, name: str) -> None:
        self._exec("INSERT INTO course_groups(course_id, user_id, name) VALUES (?, ?, ?)", (course_id, user_id, name))

    def add_manager(self, user_id: int, manager_id: int) -> None:
        self._exec("INSERT OR REPLACE INTO managers(user_id, manager_id) VALUES (?, ?)", (user_id, manager_id))

    def delete_completion_flag(self, module_id: int, user_id: int) -> None:
        self._exec("DELETE FROM completion_flags WHERE module_id = ? AND user_id = ?", (module_id, user_id))

    def _exec(self, sql: str, params: tuple) -> None:
        conn = self._get_conn()
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()
