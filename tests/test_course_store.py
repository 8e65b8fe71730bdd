from __future__ import annotations

from pathlib import Path

import pytest

from pke.core.errors import AcceptanceConflict
from pke.store import CourseRepository, InMemoryCourseStore, SQLiteCourseStore
from tests.mocks.engine import COURSE_ID, make_course


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        return InMemoryCourseStore()
    return SQLiteCourseStore(tmp_path / "nested" / "courses.sqlite")


def test_store_satisfies_protocol(store) -> None:
    assert isinstance(store, CourseRepository)


def test_save_assigns_versions(store) -> None:
    first = store.save(make_course())
    assert first.version == 1
    second = store.save(first, expected_version=1)
    assert second.version == 2
    assert second.updated_at >= first.updated_at
    assert store.get(COURSE_ID).version == 2


def test_get_returns_detached_copies(store) -> None:
    store.save(make_course())
    loaded = store.get(COURSE_ID)
    loaded.title = "Mutated"
    loaded.collaborators.append("intruder")
    fresh = store.get(COURSE_ID)
    assert fresh.title == "Applied Data Science"
    assert "intruder" not in fresh.collaborators


def test_stale_expected_version_conflicts(store) -> None:
    saved = store.save(make_course())
    store.save(saved, expected_version=saved.version)
    with pytest.raises(AcceptanceConflict) as excinfo:
        store.save(saved, expected_version=saved.version)
    assert excinfo.value.details == {"expectedVersion": 1, "currentVersion": 2}
    assert store.get(COURSE_ID).version == 2


def test_expected_version_for_missing_course_conflicts(store) -> None:
    with pytest.raises(AcceptanceConflict):
        store.save(make_course(), expected_version=3)
    assert store.get(COURSE_ID) is None


def test_list_and_delete(store) -> None:
    store.save(make_course())
    store.save(make_course(id="course-2", title="Second"))
    assert sorted(course.id for course in store.list()) == [COURSE_ID, "course-2"]
    assert store.delete("course-2") is True
    assert store.delete("course-2") is False
    assert [course.id for course in store.list()] == [COURSE_ID]


def test_sqlite_store_persists_across_instances(tmp_path: Path) -> None:
    db_path = tmp_path / "state" / "courses.sqlite"
    SQLiteCourseStore(db_path).save(make_course(description="Persisted"))
    assert db_path.exists()
    reopened = SQLiteCourseStore(db_path).get(COURSE_ID)
    assert reopened.description == "Persisted"
    assert reopened.metadata.domain == "data science"
