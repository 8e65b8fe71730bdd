"""Task context bundles handed to the generation backend.

Each builder projects a course snapshot plus request parameters into a plain
mapping. Builders are pure: they never mutate the course, never perform I/O,
and never include the course id, owner, or collaborators.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pke.core.models import Course

from .retriever import RetrievedAnchors

DEFAULT_BLOOM_LEVELS = ["understand", "apply", "analyze"]
REVISION_INSTRUCTIONS = {"address_feedback": True, "maintain_quality": True, "preserve_good_parts": True}


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class ContextBundle:
    """Immutable per-invocation context; use :meth:`as_dict` for a mutable copy."""

    invocation: int
    payload: Mapping[str, Any] = field(default_factory=dict)
    is_revision: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", _freeze(copy.deepcopy(_thaw(self.payload))))

    def __getitem__(self, key: str) -> Any:
        return _thaw(self.payload[key])

    def __contains__(self, key: object) -> bool:
        return key in self.payload

    def get(self, key: str, default: Any = None) -> Any:
        return _thaw(self.payload[key]) if key in self.payload else default

    def as_dict(self) -> Dict[str, Any]:
        return _thaw(self.payload)

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(self.as_dict(), indent=indent, default=str)


def _param(params: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    """First non-None value among ``names`` (snake_case or camelCase)."""
    for name in names:
        value = params.get(name)
        if value is not None:
            return copy.deepcopy(value)
    return copy.deepcopy(default)


def _metadata(course: Course) -> Dict[str, Any]:
    return course.metadata.model_dump(mode="json")


def _objectives(course: Course) -> List[Dict[str, Any]]:
    return [objective.model_dump(mode="json") for objective in course.learning_objectives]


def _anchor_flags(anchors: Optional[RetrievedAnchors]) -> Dict[str, bool]:
    if anchors is None:
        return {"has_policy_reference": False, "has_knowledge_pack": False, "has_template_structure": False}
    return {
        "has_policy_reference": anchors.has_policy_reference,
        "has_knowledge_pack": anchors.has_knowledge_pack,
        "has_template_structure": anchors.has_template_structure,
    }


def _summarize_anchor(item: Mapping[str, Any]) -> Dict[str, Any]:
    summary = {key: item.get(key) for key in ("id", "name", "title", "domain", "type", "description") if item.get(key)}
    if item.get("tags"):
        summary["tags"] = list(item["tags"])
    return summary


def package_retriever_results(anchors: Optional[RetrievedAnchors]) -> Dict[str, Any]:
    """Anchor summaries plus the three derived flags."""
    anchors = anchors or RetrievedAnchors()
    return {
        "policies": [_summarize_anchor(item) for item in anchors.policies],
        "knowledge_packs": [_summarize_anchor(item) for item in anchors.knowledge_packs],
        "templates": [_summarize_anchor(item) for item in anchors.templates],
        "prior_decisions": copy.deepcopy(anchors.prior_decisions),
        **_anchor_flags(anchors),
    }


def _attach_anchors(context: Dict[str, Any], anchors: Optional[RetrievedAnchors]) -> Dict[str, Any]:
    if anchors is not None and not anchors.empty:
        packaged = package_retriever_results(anchors)
        context["anchors"] = {
            key: packaged[key] for key in ("policies", "knowledge_packs", "templates", "prior_decisions") if packaged[key]
        }
    return context


# ----------------------------------------------------------------------
# Per-invocation builders


def build_invocation1_context(
    course: Course, params: Mapping[str, Any] | None = None, anchors: RetrievedAnchors | None = None
) -> Dict[str, Any]:
    params = params or {}
    metadata = _metadata(course)
    context = {
        "course_title": course.title,
        "duration": metadata["duration"],
        "level": metadata["level"],
        "target_audience": metadata["target_audience"],
        "theme": metadata["theme"],
        "domain": metadata["domain"],
        "additional_context": _param(params, "additional_context", "additionalContext", default=""),
        "requested_assistance_tier": _param(
            params, "requested_tier", "requestedTier", "assistance_tier", "assistanceTier", default="full"
        ),
        "instructions": {
            "generate_description": True,
            "determine_assistance_tier": True,
            "suggest_improvements": True,
        },
        "expected_output": {
            "description": "string (2-4 paragraphs)",
            "assistance_tier": "full | guided | minimal",
            "suggestions": "array of improvement suggestions",
        },
    }
    return _attach_anchors(context, anchors)


def build_invocation2_context(
    course: Course, params: Mapping[str, Any] | None = None, anchors: RetrievedAnchors | None = None
) -> Dict[str, Any]:
    params = params or {}
    metadata = _metadata(course)
    context = {
        "course_title": course.title,
        "course_description": course.description,
        "duration": metadata["duration"],
        "level": metadata["level"],
        "target_audience": metadata["target_audience"],
        "requested_count": _param(params, "requested_count", "requestedCount", "count", default=5),
        "bloom_levels": _param(params, "bloom_levels", "bloomLevels", default=DEFAULT_BLOOM_LEVELS),
        "focus_areas": _param(params, "focus_areas", "focusAreas", default=[]),
        "assistance_tier": metadata["assistance_tier"] or "full",
        "has_policy_reference": _anchor_flags(anchors)["has_policy_reference"],
        "instructions": {
            "use_blooms_taxonomy": True,
            "align_with_description": True,
            "make_measurable": True,
            "include_action_verbs": True,
        },
        "expected_output": {
            "learning_objectives": [
                {"code": "LO1", "text": "string", "bloom_level": "remember|understand|apply|analyze|evaluate|create"}
            ],
            "alignment_notes": "string",
        },
    }
    return _attach_anchors(context, anchors)


def build_invocation3_context(
    course: Course, params: Mapping[str, Any] | None = None, anchors: RetrievedAnchors | None = None
) -> Dict[str, Any]:
    params = params or {}
    metadata = _metadata(course)
    flags = _anchor_flags(anchors)
    context = {
        "course_title": course.title,
        "course_description": course.description,
        "duration": metadata["duration"],
        "level": metadata["level"],
        "learning_objectives": _objectives(course),
        "depth": _param(params, "depth", default="full"),
        "include_performance_criteria": _param(
            params, "include_performance_criteria", "includePerformanceCriteria", default=True
        ),
        "has_template_structure": flags["has_template_structure"],
        "has_knowledge_pack": flags["has_knowledge_pack"],
        "instructions": {
            "create_logical_progression": True,
            "align_with_learning_objectives": True,
            "balance_topic_depth": True,
            "estimate_durations": True,
        },
        "expected_output": {
            "topics": [
                {
                    "title": "string",
                    "subtopics": [
                        {
                            "title": "string",
                            "lessons": [
                                {"title": "string", "duration": "number (minutes)", "performance_criteria": ["string"]}
                            ],
                        }
                    ],
                }
            ],
            "estimated_duration": "object",
        },
    }
    return _attach_anchors(context, anchors)


def build_invocation4_context(
    course: Course, params: Mapping[str, Any] | None = None, anchors: RetrievedAnchors | None = None
) -> Dict[str, Any]:
    params = params or {}
    flags = _anchor_flags(anchors)
    include_assessments = bool(_param(params, "include_assessments", "includeAssessments", default=True))
    include_activities = bool(_param(params, "include_activities", "includeActivities", default=True))
    context = {
        "course_title": course.title,
        "course_description": course.description,
        "metadata": _metadata(course),
        "learning_objectives": _objectives(course),
        "structure": course.structure.model_dump(mode="json"),
        "include_assessments": include_assessments,
        "include_activities": include_activities,
        "content_depth": _param(params, "content_depth", "contentDepth", default="standard"),
        "has_template_structure": flags["has_template_structure"],
        "has_knowledge_pack": flags["has_knowledge_pack"],
        "instructions": {
            "generate_detailed_content": True,
            "align_with_objectives": True,
            "include_examples": True,
            "create_assessments": include_assessments,
            "create_activities": include_activities,
            "maintain_consistency": True,
        },
        "expected_output": {
            "topics": "array with full content",
            "assessments": "array of assessment items" if include_assessments else None,
            "activities": "array of activities" if include_activities else None,
            "summary": "course summary object",
        },
    }
    return _attach_anchors(context, anchors)


def build_invocation5_context(
    course: Course | None = None, params: Mapping[str, Any] | None = None, anchors: RetrievedAnchors | None = None
) -> Dict[str, Any]:
    """Template analysis is course-independent; ``course`` and ``anchors`` are ignored."""
    params = params or {}
    return {
        "template_id": _param(params, "template_id", "templateId"),
        "template_content": _param(params, "template_content", "templateContent"),
        "existing_mappings": _param(params, "mapping_rules", "mappingRules", default=[]),
        "analysis_depth": "full",
    }


ContextBuilder = Callable[..., Dict[str, Any]]

CONTEXT_BUILDERS: Mapping[int, ContextBuilder] = MappingProxyType(
    {
        1: build_invocation1_context,
        2: build_invocation2_context,
        3: build_invocation3_context,
        4: build_invocation4_context,
        5: build_invocation5_context,
    }
)


def build_context(
    invocation: int,
    course: Course | None,
    params: Mapping[str, Any] | None = None,
    anchors: RetrievedAnchors | None = None,
) -> ContextBundle:
    builder = CONTEXT_BUILDERS.get(invocation)
    if builder is None:
        raise ValueError(f"Unknown invocation {invocation}")
    if course is None and invocation != 5:
        raise ValueError(f"Invocation {invocation} requires a course")
    return ContextBundle(invocation=invocation, payload=builder(course, params or {}, anchors))


def get_previous_output(course: Course, invocation: int) -> Dict[str, Any]:
    """Already-accepted content the revision should improve on."""
    if invocation == 1:
        return {"description": course.description, "assistance_tier": course.metadata.assistance_tier.value}
    if invocation == 2:
        return {"learning_objectives": _objectives(course)}
    if invocation == 3:
        return {"structure": course.structure.model_dump(mode="json")}
    if invocation == 4:
        return {
            "structure": course.structure.model_dump(mode="json"),
            "assessments": [item.model_dump(mode="json") for item in course.assessments],
        }
    return {}


def build_revision_context(
    course: Course,
    invocation: int,
    feedback: str | None = None,
    specific_changes: Sequence[str] | None = None,
    anchors: RetrievedAnchors | None = None,
) -> ContextBundle:
    """Base bundle from the course alone, wrapped with feedback and prior output.

    With neither feedback nor changes the result is the base bundle plus
    ``is_revision``.
    """
    payload = build_context(invocation, course, {}, anchors).as_dict()
    payload["is_revision"] = True
    changes = list(specific_changes or [])
    if feedback or changes:
        payload["revision_feedback"] = feedback or ""
        payload["specific_changes"] = changes
        payload["previous_output"] = get_previous_output(course, invocation)
        payload["instructions"] = {**payload.get("instructions", {}), **REVISION_INSTRUCTIONS}
    return ContextBundle(invocation=invocation, payload=payload, is_revision=True)


__all__ = [
    "CONTEXT_BUILDERS",
    "ContextBundle",
    "build_context",
    "build_invocation1_context",
    "build_invocation2_context",
    "build_invocation3_context",
    "build_invocation4_context",
    "build_invocation5_context",
    "build_revision_context",
    "get_previous_output",
    "package_retriever_results",
]
