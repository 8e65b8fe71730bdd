"""
Evidence grading for generated content.

Grade A: policy / template truth (organizational templates)
Grade B: curated knowledge packs (vetted internal content)
Grade C: cited external sources
Grade D: heuristic draft (ungrounded generation, needs review)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Sequence

from pke.core.models import Course, EvidenceGrade

GRADE_DETAILS: Dict[EvidenceGrade, Dict[str, Any]] = {
    EvidenceGrade.A: {
        "code": "A",
        "name": "Policy / Template Truth",
        "description": "Content derived from organizational templates or policies",
        "color": "green",
        "weight": EvidenceGrade.A.weight,
    },
    EvidenceGrade.B: {
        "code": "B",
        "name": "Curated Knowledge Packs",
        "description": "Content from vetted, curated internal knowledge",
        "color": "blue",
        "weight": EvidenceGrade.B.weight,
    },
    EvidenceGrade.C: {
        "code": "C",
        "name": "Cited External Sources",
        "description": "Content with external citations and references",
        "color": "yellow",
        "weight": EvidenceGrade.C.weight,
    },
    EvidenceGrade.D: {
        "code": "D",
        "name": "Heuristic Draft",
        "description": "AI-generated content requiring review",
        "color": "orange",
        "weight": EvidenceGrade.D.weight,
    },
}

# (threshold, grade), checked top-down against the weighted mean
SCORE_THRESHOLDS: tuple[tuple[float, EvidenceGrade], ...] = (
    (0.90, EvidenceGrade.A),
    (0.75, EvidenceGrade.B),
    (0.60, EvidenceGrade.C),
)


def grade(
    invocation: int,
    sources: Sequence[Any] | None = None,
    *,
    has_template_match: bool = False,
    has_curated_content: bool = False,
    has_citations: bool = False,
) -> EvidenceGrade:
    """Assign a trust grade; the first matching rule wins."""
    if invocation == 5:
        return EvidenceGrade.A
    if has_template_match:
        return EvidenceGrade.A
    if has_curated_content:
        return EvidenceGrade.B
    if has_citations or sources:
        return EvidenceGrade.C
    return EvidenceGrade.D


def coerce_grade(value: Any) -> EvidenceGrade | None:
    """Map ``"a"``/``"A"``/``EvidenceGrade.A`` to the enum; anything else to None."""
    if isinstance(value, EvidenceGrade):
        return value
    if isinstance(value, str):
        try:
            return EvidenceGrade(value.strip().upper())
        except ValueError:
            return None
    return None


def get_grade_details(code: Any) -> Dict[str, Any]:
    return dict(GRADE_DETAILS[coerce_grade(code) or EvidenceGrade.D])


def letter_for_score(score: float) -> EvidenceGrade:
    for threshold, letter in SCORE_THRESHOLDS:
        if score >= threshold:
            return letter
    return EvidenceGrade.D


@dataclass(frozen=True)
class OverallScore:
    score: float
    overall_grade: EvidenceGrade
    breakdown: Dict[str, int] = field(default_factory=dict)
    total: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "overall_grade": self.overall_grade.value,
            "breakdown": dict(self.breakdown),
            "total": self.total,
        }


def calculate_overall_score(grades: Iterable[Any]) -> OverallScore:
    """Weighted mean of per-invocation grades mapped back to a letter.

    Unrecognised entries count towards the total with zero weight.
    """
    items = list(grades or [])
    breakdown = {letter.value: 0 for letter in EvidenceGrade}
    if not items:
        return OverallScore(score=0.0, overall_grade=EvidenceGrade.D, breakdown=breakdown, total=0)

    total_weight = 0.0
    for item in items:
        letter = coerce_grade(item)
        if letter is None:
            continue
        breakdown[letter.value] += 1
        total_weight += letter.weight

    mean = total_weight / len(items)
    return OverallScore(
        score=round(mean, 2),
        overall_grade=letter_for_score(mean),
        breakdown=breakdown,
        total=len(items),
    )


def generate_evidence_report(course: Course) -> Dict[str, Any]:
    """Per-invocation grades and the course-level aggregate, for reporting only."""
    completed = course.completed_invocations
    overall = calculate_overall_score(entry.evidence_grade for entry in completed)
    invocations: List[Dict[str, Any]] = [
        {
            "number": entry.invocation,
            "grade": entry.evidence_grade.value,
            "details": get_grade_details(entry.evidence_grade),
            "completed_at": entry.completed_at.isoformat(),
        }
        for entry in completed
    ]
    return {
        "course_id": course.id,
        "course_title": course.title,
        "invocations": invocations,
        "overall": overall.as_dict(),
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }


__all__ = [
    "GRADE_DETAILS",
    "OverallScore",
    "calculate_overall_score",
    "coerce_grade",
    "generate_evidence_report",
    "get_grade_details",
    "grade",
    "letter_for_score",
]
