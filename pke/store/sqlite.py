"""Lightweight SQLite-backed course store with optimistic versioning."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import List, Optional

from pke.core.errors import AcceptanceConflict
from pke.core.models import Course, utcnow

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS courses (
    id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    payload TEXT NOT NULL,
    updated_at TIMESTAMP NOT NULL
);
"""


class SQLiteCourseStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        """Create a connection, ensuring the parent directory exists."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.db_path)

    def _ensure_schema(self) -> None:
        with self._connect() as con:
            con.executescript(SCHEMA_SQL)

    def get(self, course_id: str) -> Optional[Course]:
        with self._connect() as con:
            row = con.execute("SELECT payload FROM courses WHERE id = ?", (course_id,)).fetchone()
        if row is None:
            return None
        return Course.model_validate_json(row[0])

    def save(self, course: Course, *, expected_version: int | None = None) -> Course:
        """Insert or update ``course``; a stale ``expected_version`` raises ``AcceptanceConflict``."""

        with self._connect() as con:
            row = con.execute("SELECT version FROM courses WHERE id = ?", (course.id,)).fetchone()
            current_version = int(row[0]) if row else None
            if expected_version is not None and current_version != expected_version:
                raise self._conflict(course.id, expected_version, current_version)

            new_version = (current_version if current_version is not None else course.version) + 1
            updated = course.model_copy(deep=True, update={"version": new_version, "updated_at": utcnow()})
            payload = updated.model_dump_json()

            if current_version is None:
                try:
                    con.execute(
                        "INSERT INTO courses (id, version, payload, updated_at) VALUES (?, ?, ?, ?)",
                        (updated.id, new_version, payload, updated.updated_at.isoformat()),
                    )
                except sqlite3.IntegrityError as exc:
                    raise self._conflict(course.id, expected_version, None) from exc
            else:
                # conditional update keeps the check-and-set atomic across connections
                cur = con.execute(
                    "UPDATE courses SET version = ?, payload = ?, updated_at = ? WHERE id = ? AND version = ?",
                    (new_version, payload, updated.updated_at.isoformat(), updated.id, current_version),
                )
                if cur.rowcount != 1:
                    raise self._conflict(course.id, expected_version, None)
            con.commit()
        return updated

    def list(self) -> List[Course]:
        with self._connect() as con:
            rows = con.execute("SELECT payload FROM courses ORDER BY updated_at").fetchall()
        return [Course.model_validate_json(row[0]) for row in rows]

    def delete(self, course_id: str) -> bool:
        with self._connect() as con:
            cur = con.execute("DELETE FROM courses WHERE id = ?", (course_id,))
            con.commit()
            return cur.rowcount > 0

    @staticmethod
    def _conflict(course_id: str, expected: int | None, found: int | None) -> AcceptanceConflict:
        return AcceptanceConflict(
            f"Course {course_id} changed concurrently (expected version {expected}, found {found})",
            details={"expectedVersion": expected, "currentVersion": found},
        )


__all__ = ["SQLiteCourseStore"]
