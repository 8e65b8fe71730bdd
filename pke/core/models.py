"""Typed course aggregate and related value objects."""

from __future__ import annotations

import copy
import json
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel, to_snake


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def snake_keys(value: Any) -> Any:
    """Recursively rewrite mapping keys to snake_case."""
    if isinstance(value, dict):
        return {to_snake(key) if isinstance(key, str) else key: snake_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [snake_keys(item) for item in value]
    return value


def camel_keys(value: Any) -> Any:
    """Recursively rewrite mapping keys to camelCase for the HTTP surface."""
    if isinstance(value, dict):
        return {to_camel(key) if isinstance(key, str) else key: camel_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [camel_keys(item) for item in value]
    return value


class CamelModel(BaseModel):
    """Snake_case attributes that also accept and emit camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Stage(str, Enum):
    """Coarse workflow phases, in the only order a course may move through them."""

    DEFINE = "define"
    DESIGN = "design"
    BUILD = "build"
    FORMAT = "format"
    GENERATE = "generate"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)

    @classmethod
    def choices(cls) -> List[str]:
        return [member.value for member in cls]


STAGE_ORDER: tuple[Stage, ...] = (Stage.DEFINE, Stage.DESIGN, Stage.BUILD, Stage.FORMAT, Stage.GENERATE)


class EvidenceGrade(str, Enum):
    """Trust classification attached to generated content, A highest."""

    A = "A"
    B = "B"
    C = "C"
    D = "D"

    @property
    def weight(self) -> float:
        return GRADE_WEIGHTS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, EvidenceGrade):
            return NotImplemented
        return self.weight < other.weight

    def __le__(self, other: object) -> bool:
        if not isinstance(other, EvidenceGrade):
            return NotImplemented
        return self.weight <= other.weight

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, EvidenceGrade):
            return NotImplemented
        return self.weight > other.weight

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, EvidenceGrade):
            return NotImplemented
        return self.weight >= other.weight


GRADE_WEIGHTS: Dict[EvidenceGrade, float] = {
    EvidenceGrade.A: 1.0,
    EvidenceGrade.B: 0.85,
    EvidenceGrade.C: 0.7,
    EvidenceGrade.D: 0.5,
}


class BloomLevel(str, Enum):
    REMEMBER = "remember"
    UNDERSTAND = "understand"
    APPLY = "apply"
    ANALYZE = "analyze"
    EVALUATE = "evaluate"
    CREATE = "create"


class AssistanceTier(str, Enum):
    FULL = "full"
    GUIDED = "guided"
    MINIMAL = "minimal"


class CourseDuration(CamelModel):
    value: float = 1
    unit: Literal["hours", "days", "weeks"] = "days"


class CourseMetadata(CamelModel):
    code: Optional[str] = None
    duration: CourseDuration = Field(default_factory=CourseDuration)
    level: Literal["beginner", "intermediate", "advanced", "expert"] = "intermediate"
    theme: Optional[str] = None
    target_audience: Optional[str] = None
    domain: Optional[str] = None
    assistance_tier: AssistanceTier = AssistanceTier.FULL


class LearningObjective(CamelModel):
    code: Optional[str] = None
    text: str = ""
    bloom_level: Optional[BloomLevel] = None
    evidence_grade: EvidenceGrade = EvidenceGrade.D
    source_ref: Optional[str] = None

    @field_validator("bloom_level", mode="before")
    @classmethod
    def normalize_bloom(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = value.strip().lower()
            return cleaned if cleaned in {level.value for level in BloomLevel} else None
        return value


class Lesson(CamelModel):
    title: str = ""
    duration: Optional[float] = None
    content: Optional[str] = None
    performance_criteria: List[str] = Field(default_factory=list)
    evidence_grade: EvidenceGrade = EvidenceGrade.D

    @field_validator("duration", mode="before")
    @classmethod
    def leading_number(cls, value: Any) -> Any:
        # generated durations often arrive as "30 minutes"
        if isinstance(value, str):
            match = re.match(r"\s*(\d+(?:\.\d+)?)", value)
            return float(match.group(1)) if match else None
        return value

    @field_validator("content", mode="before")
    @classmethod
    def flatten_content(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)

    @field_validator("performance_criteria", mode="before")
    @classmethod
    def stringify_criteria(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [item if isinstance(item, str) else json.dumps(item, ensure_ascii=False) for item in value]
        return [str(value)]


class Subtopic(CamelModel):
    title: str = ""
    lessons: List[Lesson] = Field(default_factory=list)
    notes: Optional[str] = None


class Topic(CamelModel):
    title: str = ""
    subtopics: List[Subtopic] = Field(default_factory=list)
    order: Optional[int] = None


class CourseStructure(CamelModel):
    topics: List[Topic] = Field(default_factory=list)


class Assessment(CamelModel):
    question: str = ""
    type: Optional[str] = None
    options: List[str] = Field(default_factory=list)
    correct_answer: Optional[str] = None
    linked_lo: Optional[str] = Field(default=None, alias="linkedLO")

    @field_validator("options", mode="before")
    @classmethod
    def stringify_options(cls, value: Any) -> Any:
        if value is None:
            return []
        return [str(item) for item in value] if isinstance(value, list) else value

    @field_validator("correct_answer", "linked_lo", mode="before")
    @classmethod
    def stringify_scalar(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class CompletedInvocation(CamelModel):
    invocation: int = Field(..., ge=1, le=5)
    completed_at: datetime = Field(default_factory=utcnow)
    evidence_grade: EvidenceGrade = EvidenceGrade.D


class RevisionEntry(CamelModel):
    version: int
    changed_by: Optional[str] = None
    changed_at: datetime = Field(default_factory=utcnow)
    change_type: str
    summary: str = ""


class Gates(CamelModel):
    gate_a: bool = False
    gate_b: bool = False


class Course(CamelModel):
    """Aggregate root for the authoring workflow."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = ""
    description: str = ""
    metadata: CourseMetadata = Field(default_factory=CourseMetadata)
    learning_objectives: List[LearningObjective] = Field(default_factory=list)
    structure: CourseStructure = Field(default_factory=CourseStructure)
    assessments: List[Assessment] = Field(default_factory=list)
    current_stage: Stage = Stage.DEFINE
    completed_invocations: List[CompletedInvocation] = Field(default_factory=list)
    gates: Gates = Field(default_factory=Gates)
    owner: str
    collaborators: List[str] = Field(default_factory=list)
    status: Literal["draft", "in_progress", "review", "published", "archived"] = "draft"
    revision_history: List[RevisionEntry] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def completed_numbers(self) -> List[int]:
        return [entry.invocation for entry in self.completed_invocations]

    def has_access(self, user_id: str | None) -> bool:
        if not user_id:
            return False
        return user_id == self.owner or user_id in self.collaborators

    def snapshot(self) -> "Course":
        """Return a detached deep copy safe to mutate."""
        return self.model_copy(deep=True)


class InvocationRequest(BaseModel):
    """Ephemeral unit of work handed to the orchestrator."""

    model_config = ConfigDict(frozen=True)

    invocation: int = Field(..., ge=1, le=5)
    course_id: Optional[str] = None
    user_id: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    is_revision: bool = False
    feedback: Optional[str] = None
    specific_changes: List[str] = Field(default_factory=list)

    def params(self) -> Dict[str, Any]:
        return copy.deepcopy(self.parameters)


__all__ = [
    "Assessment",
    "AssistanceTier",
    "BloomLevel",
    "CamelModel",
    "CompletedInvocation",
    "Course",
    "CourseDuration",
    "CourseMetadata",
    "CourseStructure",
    "EvidenceGrade",
    "GRADE_WEIGHTS",
    "Gates",
    "InvocationRequest",
    "LearningObjective",
    "Lesson",
    "RevisionEntry",
    "STAGE_ORDER",
    "Stage",
    "Subtopic",
    "Topic",
    "camel_keys",
    "snake_keys",
    "utcnow",
]
