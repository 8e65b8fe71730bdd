import tempfile
import threading
import unittest
from pathlib import Path

from pke.core.audit import AuditAction, AuditLogger
from pke.core.errors import GatingError
from pke.core.models import CompletedInvocation, Stage
from pke.engine.gating import (
    INVOCATION_PREREQUISITES,
    GatingEngine,
    check_gate_b,
    check_prerequisites,
    check_stage,
    prerequisites_for,
    require_invocation,
)
from pke.store import InMemoryCourseStore
from tests.mocks.engine import COLLABORATOR, OWNER, STRANGER, make_course


def _completed(*numbers: int) -> list:
    return [CompletedInvocation(invocation=number) for number in numbers]


class BarrierStore(InMemoryCourseStore):
    """Holds the first reads until every reader has the same version."""

    def __init__(self, parties: int) -> None:
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)
        self._held = parties
        self._count_lock = threading.Lock()

    def get(self, course_id):
        course = super().get(course_id)
        with self._count_lock:
            hold = self._held > 0
            self._held -= 1
        if hold:
            self.barrier.wait()
        return course


class InterleavedWriteStore(InMemoryCourseStore):
    """Lands an unrelated write just before the first versioned save."""

    def __init__(self) -> None:
        super().__init__()
        self.interleaved = False

    def save(self, course, *, expected_version=None):
        if expected_version is not None and not self.interleaved:
            self.interleaved = True
            super().save(super().get(course.id))
        return super().save(course, expected_version=expected_version)


class GateBTests(unittest.TestCase):
    def test_untitled_course_fails_for_every_user(self) -> None:
        for title in ("", "   "):
            course = make_course(title=title)
            for user in (OWNER, COLLABORATOR, STRANGER, None):
                result = check_gate_b(course, user)
                self.assertFalse(result.passed)
                self.assertEqual(result.code, "GATE_B_FAILED")
                self.assertEqual(result.details["gate"], "B")
                self.assertIn("hint", result.details)

    def test_owner_and_collaborator_pass(self) -> None:
        course = make_course()
        self.assertTrue(check_gate_b(course, OWNER).passed)
        self.assertTrue(check_gate_b(course, COLLABORATOR).passed)

    def test_stranger_is_denied(self) -> None:
        result = check_gate_b(make_course(), STRANGER)
        self.assertFalse(result.passed)
        self.assertEqual(result.code, "ACCESS_DENIED")
        with self.assertRaises(GatingError) as ctx:
            result.raise_for_failure()
        self.assertEqual(ctx.exception.status_code, 403)


class PrerequisiteTests(unittest.TestCase):
    def test_prerequisite_table(self) -> None:
        self.assertEqual(prerequisites_for(1), [])
        self.assertEqual(prerequisites_for(2), [1])
        self.assertEqual(prerequisites_for(3), [1, 2])
        self.assertEqual(prerequisites_for(4), [1, 2, 3])
        self.assertEqual(prerequisites_for(5), [])
        self.assertEqual(set(INVOCATION_PREREQUISITES), {1, 2, 3, 4, 5})

    def test_missing_prerequisites_are_reported(self) -> None:
        course = make_course(completed_invocations=_completed(1))
        result = check_prerequisites(course, 4)
        self.assertFalse(result.passed)
        self.assertEqual(result.code, "PREREQUISITES_NOT_MET")
        self.assertEqual(result.details, {"required": [1, 2, 3], "completed": [1], "missing": [2, 3]})

    def test_satisfied_prerequisites_pass(self) -> None:
        course = make_course(completed_invocations=_completed(1, 2))
        self.assertTrue(check_prerequisites(course, 3).passed)
        self.assertTrue(check_prerequisites(make_course(), 1).passed)
        self.assertTrue(check_prerequisites(make_course(), 5).passed)

    def test_require_single_invocation(self) -> None:
        course = make_course(completed_invocations=_completed(1))
        self.assertTrue(require_invocation(course, 1).passed)
        failed = require_invocation(course, 2)
        self.assertEqual(failed.code, "INVOCATION_REQUIRED")
        self.assertEqual(failed.details, {"required": 2, "completed": [1]})


class StageTests(unittest.TestCase):
    def test_wrong_stage_details(self) -> None:
        course = make_course(current_stage=Stage.BUILD)
        result = check_stage(course, ["define", Stage.DESIGN])
        self.assertFalse(result.passed)
        self.assertEqual(result.code, "WRONG_STAGE")
        self.assertEqual(result.details, {"currentStage": "build", "allowedStages": ["define", "design"]})

    def test_allowed_stage_passes(self) -> None:
        self.assertTrue(check_stage(make_course(), [Stage.DEFINE]).passed)


class GatingEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.audit = AuditLogger(Path(tmp.name) / "audit.jsonl")
        self.store = InMemoryCourseStore()
        self.engine = GatingEngine(self.store, self.audit)

    def _gate_passes(self) -> int:
        return self.audit.query(action=AuditAction.GATE_PASSED)["total"]

    def test_missing_course_id(self) -> None:
        with self.assertRaises(GatingError) as ctx:
            self.engine.admit(None, OWNER, 1)
        self.assertEqual(ctx.exception.code, "NO_COURSE_ID")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_unknown_course(self) -> None:
        with self.assertRaises(GatingError) as ctx:
            self.engine.admit("nope", OWNER, 1)
        self.assertEqual(ctx.exception.code, "COURSE_NOT_FOUND")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_first_pass_marks_gate_b_once(self) -> None:
        saved = self.store.save(make_course())

        admitted = self.engine.admit(saved.id, OWNER, 1)
        self.assertTrue(admitted.gates.gate_b)
        self.assertEqual(admitted.version, saved.version + 1)
        self.assertEqual(self._gate_passes(), 1)

        again = self.engine.admit(saved.id, COLLABORATOR, 1)
        self.assertEqual(again.version, admitted.version)
        self.assertEqual(self._gate_passes(), 1)

    def test_gate_b_is_checked_before_prerequisites(self) -> None:
        saved = self.store.save(make_course(title=""))
        with self.assertRaises(GatingError) as ctx:
            self.engine.admit(saved.id, OWNER, 4)
        self.assertEqual(ctx.exception.code, "GATE_B_FAILED")
        self.assertFalse(self.store.get(saved.id).gates.gate_b)
        self.assertEqual(self._gate_passes(), 0)

    def test_prerequisite_failure_carries_details(self) -> None:
        saved = self.store.save(make_course())
        with self.assertRaises(GatingError) as ctx:
            self.engine.admit(saved.id, OWNER, 3)
        self.assertEqual(ctx.exception.code, "PREREQUISITES_NOT_MET")
        payload = ctx.exception.to_payload()
        self.assertEqual(payload["missing"], [1, 2])
        self.assertFalse(payload["success"])

    def test_stage_window_is_optional(self) -> None:
        saved = self.store.save(make_course(current_stage=Stage.FORMAT))
        self.engine.admit(saved.id, OWNER, 1)
        with self.assertRaises(GatingError) as ctx:
            self.engine.admit(saved.id, OWNER, 1, allowed_stages=[Stage.DEFINE])
        self.assertEqual(ctx.exception.code, "WRONG_STAGE")

    def test_concurrent_first_admits_both_succeed(self) -> None:
        store = BarrierStore(parties=2)
        saved = store.save(make_course())
        engine = GatingEngine(store, self.audit)
        admitted: list = []
        errors: list = []

        def run(user: str) -> None:
            try:
                admitted.append(engine.admit(saved.id, user, 1))
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=run, args=(user,)) for user in (OWNER, COLLABORATOR)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(errors, [])
        self.assertEqual(len(admitted), 2)
        self.assertTrue(all(course.gates.gate_b for course in admitted))
        self.assertEqual(store.get(saved.id).version, saved.version + 1)
        self.assertEqual(self._gate_passes(), 1)

    def test_gate_b_mark_retries_after_unrelated_write(self) -> None:
        store = InterleavedWriteStore()
        saved = store.save(make_course())
        admitted = GatingEngine(store, self.audit).admit(saved.id, OWNER, 1)
        self.assertTrue(admitted.gates.gate_b)
        self.assertEqual(admitted.version, saved.version + 2)
        self.assertEqual(self._gate_passes(), 1)


if __name__ == "__main__":
    unittest.main()
