"""Course persistence behind a small repository protocol."""

from __future__ import annotations

from typing import List, Optional, Protocol, runtime_checkable

from pke.core.models import Course

from .memory import InMemoryCourseStore
from .sqlite import SQLiteCourseStore


@runtime_checkable
class CourseRepository(Protocol):
    def get(self, course_id: str) -> Optional[Course]:
        ...

    def save(self, course: Course, *, expected_version: int | None = None) -> Course:
        ...

    def list(self) -> List[Course]:
        ...


__all__ = ["CourseRepository", "InMemoryCourseStore", "SQLiteCourseStore"]
