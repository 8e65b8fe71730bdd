"""Workflow gates: Gate B, invocation prerequisites, and stage windows.

The ``check_*`` predicates are pure and return a :class:`GateResult`.
:class:`GatingEngine` composes them against the course store and turns the
first failure into a :class:`~pke.core.errors.GatingError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pke.core.audit import AuditAction, AuditLogger, AuditRecord
from pke.core.errors import AcceptanceConflict, GatingError
from pke.core.models import Course, Stage

LOGGER = logging.getLogger(__name__)

INVOCATION_PREREQUISITES: Mapping[int, tuple[int, ...]] = {
    1: (),
    2: (1,),
    3: (1, 2),
    4: (1, 2, 3),
    5: (),
}

GATE_B_HINT = "Save a course title first using PUT /api/courses/:id/title"


@dataclass(frozen=True)
class GateResult:
    passed: bool
    code: Optional[str] = None
    message: str = ""
    status_code: int = 403
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls) -> "GateResult":
        return cls(passed=True)

    def raise_for_failure(self) -> None:
        if not self.passed:
            raise GatingError(self.message, code=self.code, status_code=self.status_code, details=self.details)


def prerequisites_for(invocation: int) -> List[int]:
    return list(INVOCATION_PREREQUISITES.get(invocation, ()))


def check_gate_b(course: Course, user_id: str | None) -> GateResult:
    """Title saved and user is owner or collaborator.

    The title is checked first so an untitled course fails Gate B for every user.
    """
    if not course.title or not course.title.strip():
        return GateResult(
            passed=False,
            code="GATE_B_FAILED",
            message="Course title must be saved before proceeding",
            details={"gate": "B", "hint": GATE_B_HINT},
        )
    if not course.has_access(user_id):
        return GateResult(
            passed=False,
            code="ACCESS_DENIED",
            message="Access denied to this course",
            details={"gate": "B"},
        )
    return GateResult.ok()


def check_prerequisites(course: Course, invocation: int) -> GateResult:
    required = prerequisites_for(invocation)
    completed = course.completed_numbers
    missing = [number for number in required if number not in completed]
    if missing:
        return GateResult(
            passed=False,
            code="PREREQUISITES_NOT_MET",
            message=f"Complete invocation(s) {', '.join(str(n) for n in missing)} first",
            details={"required": required, "completed": completed, "missing": missing},
        )
    return GateResult.ok()


def check_stage(course: Course, allowed_stages: Iterable[Stage | str]) -> GateResult:
    allowed = [Stage(stage) for stage in allowed_stages]
    if course.current_stage not in allowed:
        names = [stage.value for stage in allowed]
        return GateResult(
            passed=False,
            code="WRONG_STAGE",
            message=f"This action requires stage: {' or '.join(names)}",
            details={"currentStage": course.current_stage.value, "allowedStages": names},
        )
    return GateResult.ok()


def require_invocation(course: Course, invocation: int) -> GateResult:
    """Single-invocation check used where only one predecessor matters."""
    completed = course.completed_numbers
    if invocation not in completed:
        return GateResult(
            passed=False,
            code="INVOCATION_REQUIRED",
            message=f"Invocation {invocation} must be completed first",
            details={"required": invocation, "completed": completed},
        )
    return GateResult.ok()


class GatingEngine:
    """Loads the course and applies the gates in order, stopping at the first failure."""

    def __init__(self, store: Any, audit: AuditLogger | None = None) -> None:
        self.store = store
        self.audit = audit

    def admit(
        self,
        course_id: str | None,
        user_id: str | None,
        invocation: int,
        allowed_stages: Sequence[Stage | str] | None = None,
    ) -> Course:
        if not course_id:
            raise GatingError("Course ID required", code="NO_COURSE_ID", status_code=400, details={"gate": "B"})
        course = self.store.get(course_id)
        if course is None:
            raise GatingError("Course not found", code="COURSE_NOT_FOUND", status_code=404, details={"gate": "B"})

        check_gate_b(course, user_id).raise_for_failure()
        check_prerequisites(course, invocation).raise_for_failure()
        if allowed_stages is not None:
            check_stage(course, allowed_stages).raise_for_failure()

        if not course.gates.gate_b:
            course = self._mark_gate_b(course, user_id)
        return course

    # ------------------------------------------------------------------

    def _mark_gate_b(self, course: Course, user_id: str | None) -> Course:
        try:
            saved = self._save_gate_b(course)
        except AcceptanceConflict:
            # another request wrote first; the mark is idempotent
            current = self.store.get(course.id)
            if current is None:
                raise GatingError(
                    "Course not found", code="COURSE_NOT_FOUND", status_code=404, details={"gate": "B"}
                ) from None
            if current.gates.gate_b:
                return current
            saved = self._save_gate_b(current)
        LOGGER.info("Gate B passed for course %s", course.id)
        if self.audit is not None:
            self.audit.log(
                AuditRecord(
                    action=AuditAction.GATE_PASSED,
                    user_id=user_id,
                    course_id=course.id,
                    course_title=course.title,
                    metadata={"gate": "B"},
                )
            )
        return saved

    def _save_gate_b(self, course: Course) -> Course:
        marked = course.snapshot()
        marked.gates.gate_b = True
        return self.store.save(marked, expected_version=course.version)


__all__ = [
    "GateResult",
    "GatingEngine",
    "INVOCATION_PREREQUISITES",
    "check_gate_b",
    "check_prerequisites",
    "check_stage",
    "prerequisites_for",
    "require_invocation",
]
