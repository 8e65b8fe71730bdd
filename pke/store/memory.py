"""Process-local course store used by tests and offline runs."""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

from pke.core.errors import AcceptanceConflict
from pke.core.models import Course, utcnow


class InMemoryCourseStore:
    """Dict-backed repository; callers only ever see deep copies."""

    def __init__(self, courses: List[Course] | None = None) -> None:
        self._courses: Dict[str, Course] = {}
        self._lock = threading.Lock()
        for course in courses or []:
            self._courses[course.id] = course.snapshot()

    def get(self, course_id: str) -> Optional[Course]:
        with self._lock:
            stored = self._courses.get(course_id)
            return stored.snapshot() if stored else None

    def save(self, course: Course, *, expected_version: int | None = None) -> Course:
        """Persist ``course``, bumping its version.

        When ``expected_version`` is given the write only lands if the stored
        copy still has that version; otherwise ``AcceptanceConflict`` is raised.
        """
        with self._lock:
            current = self._courses.get(course.id)
            if expected_version is not None:
                stored_version = current.version if current else None
                if stored_version != expected_version:
                    raise AcceptanceConflict(
                        f"Course {course.id} changed concurrently (expected version {expected_version}, found {stored_version})",
                        details={"expectedVersion": expected_version, "currentVersion": stored_version},
                    )
            updated = course.model_copy(
                deep=True,
                update={"version": (current.version if current else course.version) + 1, "updated_at": utcnow()},
            )
            self._courses[course.id] = updated
            return updated.snapshot()

    def list(self) -> List[Course]:
        with self._lock:
            return [course.snapshot() for course in self._courses.values()]

    def delete(self, course_id: str) -> bool:
        with self._lock:
            return self._courses.pop(course_id, None) is not None


__all__ = ["InMemoryCourseStore"]
