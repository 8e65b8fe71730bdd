"""Per-invocation strategy table.

Everything that differs between invocations 1 to 5 (result model, accept
mapping, stage window, grading signals, audit projection)
lives here so the orchestrator stays a single code path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from pke.core.errors import InvocationInputError
from pke.core.models import (
    Assessment,
    AssistanceTier,
    Course,
    CourseStructure,
    EvidenceGrade,
    LearningObjective,
    Stage,
    snake_keys,
)
from pke.core.validation import ValidationFailure, ValidationFramework

from . import context as ctx
from .gating import prerequisites_for
from .parsing import (
    BuildResult,
    DescriptionResult,
    InvocationResult,
    ObjectivesResult,
    StructureResult,
    TemplateMappingResult,
)
from .retriever import RetrievedAnchors

AcceptMapper = Callable[[Course, Dict[str, Any], EvidenceGrade], None]
ModelT = TypeVar("ModelT", bound=BaseModel)

_CONTENT_CHECKS = ValidationFramework(strict=True)


def _require(content: Mapping[str, Any], key: str, invocation: int) -> Any:
    if key not in content or content[key] is None:
        raise InvocationInputError(f"Invocation {invocation} content requires '{key}'", details={"field": key})
    return content[key]


def _validated(model_class: Type[ModelT], payload: Any, invocation: int) -> ModelT:
    try:
        return _CONTENT_CHECKS.validate_pydantic_model(payload, model_class).data
    except ValidationFailure as exc:
        raise InvocationInputError(
            f"Invocation {invocation} content is invalid", details={"errors": exc.errors}
        ) from exc


def _with_grade(item: Any, grade: EvidenceGrade) -> Any:
    if isinstance(item, Mapping) and not item.get("evidence_grade"):
        return {**item, "evidence_grade": grade.value}
    return item


def _graded_topics(topics: Any, grade: EvidenceGrade) -> Any:
    """Copy ``topics`` with the accepted grade on every lesson that carries none."""
    if not isinstance(topics, list):
        return topics
    graded = []
    for topic in topics:
        if isinstance(topic, Mapping) and isinstance(topic.get("subtopics"), list):
            subtopics = []
            for subtopic in topic["subtopics"]:
                if isinstance(subtopic, Mapping) and isinstance(subtopic.get("lessons"), list):
                    subtopic = {**subtopic, "lessons": [_with_grade(lesson, grade) for lesson in subtopic["lessons"]]}
                subtopics.append(subtopic)
            topic = {**topic, "subtopics": subtopics}
        graded.append(topic)
    return graded


def _accept_description(course: Course, content: Dict[str, Any], grade: EvidenceGrade) -> None:
    description = _require(content, "description", 1)
    if not isinstance(description, str):
        raise InvocationInputError("Invocation 1 description must be text", details={"field": "description"})
    tier = content.get("assistance_tier")
    course.description = description
    if tier:
        try:
            course.metadata.assistance_tier = AssistanceTier(str(tier).strip().lower())
        except ValueError as exc:
            raise InvocationInputError(
                f"Unknown assistance tier '{tier}'", details={"allowed": [item.value for item in AssistanceTier]}
            ) from exc


def _accept_objectives(course: Course, content: Dict[str, Any], grade: EvidenceGrade) -> None:
    items = _require(content, "learning_objectives", 2)
    if not isinstance(items, list):
        raise InvocationInputError("Invocation 2 learning_objectives must be a list")
    objectives = []
    for item in items:
        payload = dict(item) if isinstance(item, Mapping) else {"text": str(item)}
        payload.setdefault("evidence_grade", grade.value)
        objectives.append(_validated(LearningObjective, payload, 2))
    course.learning_objectives = objectives


def _structure_from(content: Dict[str, Any], invocation: int, grade: EvidenceGrade) -> CourseStructure:
    topics = _require(content, "topics", invocation)
    return _validated(CourseStructure, {"topics": _graded_topics(topics, grade)}, invocation)


def _accept_structure(course: Course, content: Dict[str, Any], grade: EvidenceGrade) -> None:
    course.structure = _structure_from(content, 3, grade)


def _accept_build(course: Course, content: Dict[str, Any], grade: EvidenceGrade) -> None:
    structure = _structure_from(content, 4, grade)
    assessments = [_validated(Assessment, item, 4) for item in content.get("assessments") or []]
    course.structure = structure
    course.assessments = assessments


def _grading_flags(anchors: Optional[RetrievedAnchors], *, template: bool, curated: str | None) -> Dict[str, bool]:
    anchors = anchors or RetrievedAnchors()
    has_curated = False
    if curated == "policy":
        has_curated = anchors.has_policy_reference
    elif curated == "pack":
        has_curated = anchors.has_knowledge_pack
    return {
        "has_template_match": template and anchors.has_template_structure,
        "has_curated_content": has_curated,
    }


@dataclass(frozen=True)
class InvocationSpec:
    number: int
    name: str
    result_model: Type[InvocationResult]
    target_stage: Optional[Stage] = None
    accept_stages: Tuple[Stage, ...] = ()
    apply_accept: Optional[AcceptMapper] = None
    uses_template_signal: bool = False
    curated_signal: Optional[str] = None
    audit_params: Tuple[str, ...] = ()
    actions: Tuple[str, ...] = ("accept", "revise")
    next_steps: Tuple[str, ...] = ()
    admin_only: bool = False
    requires_course: bool = True

    @property
    def prerequisites(self) -> List[int]:
        return prerequisites_for(self.number)

    @property
    def acceptable(self) -> bool:
        return self.apply_accept is not None

    def grading_flags(self, anchors: Optional[RetrievedAnchors]) -> Dict[str, bool]:
        return _grading_flags(anchors, template=self.uses_template_signal, curated=self.curated_signal)

    def accept_into(self, course: Course, content: Mapping[str, Any], grade: EvidenceGrade) -> None:
        """Write accepted content into ``course`` in place."""
        if self.apply_accept is None:
            raise InvocationInputError(f"Invocation {self.number} output cannot be accepted into a course")
        if not isinstance(content, Mapping):
            raise InvocationInputError("Accepted content must be an object")
        self.apply_accept(course, snake_keys(dict(content)), grade)

    def previous_output(self, course: Course) -> Dict[str, Any]:
        return ctx.get_previous_output(course, self.number)

    def audit_input(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        normalized = snake_keys(dict(params))
        if self.number == 5:
            return {"template_id": normalized.get("template_id"), "has_content": bool(normalized.get("template_content"))}
        return {key: normalized.get(key) for key in self.audit_params}

    def audit_output(self, result: InvocationResult) -> Any:
        if isinstance(result, BuildResult):
            return {"topics_count": len(result.topics), "assessments_count": len(result.assessments)}
        if isinstance(result, TemplateMappingResult):
            return {"fields_detected": len(result.fields)}
        return result.model_dump(mode="json")

    def present(self, result: InvocationResult) -> Dict[str, Any]:
        """Result payload returned to the caller (snake_case keys)."""
        if isinstance(result, TemplateMappingResult):
            data = result.presented()
        else:
            data = result.model_dump(mode="json", exclude={"sources"})
        if isinstance(result, DescriptionResult) and not data.get("assistance_tier"):
            data["assistance_tier"] = "full"
        if result.parse_error:
            data["raw_content"] = result.raw_content
            data["parse_error"] = True
        else:
            data.pop("raw_content", None)
            data.pop("parse_error", None)
        return data


INVOCATIONS: Dict[int, InvocationSpec] = {
    1: InvocationSpec(
        number=1,
        name="Course Description + Assistance Tier",
        result_model=DescriptionResult,
        target_stage=Stage.DESIGN,
        accept_stages=(Stage.DEFINE, Stage.DESIGN),
        apply_accept=_accept_description,
        audit_params=("additional_context", "assistance_tier", "requested_tier"),
    ),
    2: InvocationSpec(
        number=2,
        name="Learning Objectives",
        result_model=ObjectivesResult,
        target_stage=Stage.DESIGN,
        accept_stages=(Stage.DESIGN,),
        apply_accept=_accept_objectives,
        curated_signal="policy",
        audit_params=("requested_count", "count", "bloom_levels", "focus_areas"),
    ),
    3: InvocationSpec(
        number=3,
        name="Topics / Subtopics / Lessons",
        result_model=StructureResult,
        target_stage=Stage.BUILD,
        accept_stages=(Stage.DESIGN, Stage.BUILD),
        apply_accept=_accept_structure,
        uses_template_signal=True,
        curated_signal="pack",
        audit_params=("depth", "include_performance_criteria"),
    ),
    4: InvocationSpec(
        number=4,
        name="Full Course Build",
        result_model=BuildResult,
        target_stage=Stage.FORMAT,
        accept_stages=(Stage.BUILD, Stage.FORMAT),
        apply_accept=_accept_build,
        uses_template_signal=True,
        curated_signal="pack",
        audit_params=("include_assessments", "include_activities", "content_depth"),
        next_steps=("export", "format"),
    ),
    5: InvocationSpec(
        number=5,
        name="Template Mapping",
        result_model=TemplateMappingResult,
        actions=("save", "apply", "discard"),
        admin_only=True,
        requires_course=False,
    ),
}


def get_invocation(number: int) -> InvocationSpec:
    try:
        return INVOCATIONS[int(number)]
    except (KeyError, TypeError, ValueError) as exc:
        raise InvocationInputError(f"Unknown invocation {number}", details={"allowed": sorted(INVOCATIONS)}) from exc


__all__ = ["INVOCATIONS", "InvocationSpec", "get_invocation"]
