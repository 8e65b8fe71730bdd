"""Turn raw generation text into per-invocation result payloads.

Parsing never raises: structured JSON is preferred, a per-invocation text
heuristic is the fallback, and anything else degrades to ``raw_content``
with ``parse_error`` set so the caller can surface it for review.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

from pydantic import ConfigDict, Field, ValidationError, field_validator, model_validator

from pke.core.models import CamelModel, snake_keys

LOGGER = logging.getLogger(__name__)

FENCED_JSON_RE = re.compile(r"```json\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)
BRACED_RE = re.compile(r"\{[\s\S]*\}")
OBJECTIVE_LINE_RE = re.compile(r"^\s*(?:[-*•]\s*)?(?:LO\s*\d+|\d+[.)])\s*[:\-]?\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)


class ParseMode(str, Enum):
    STRUCTURED = "structured"
    HEURISTIC = "heuristic"
    RAW = "raw"


@dataclass(frozen=True)
class ParsedResponse:
    data: Dict[str, Any] = field(default_factory=dict)
    mode: ParseMode = ParseMode.STRUCTURED
    raw_content: str = ""

    @property
    def parse_error(self) -> bool:
        return self.mode is not ParseMode.STRUCTURED


# ----------------------------------------------------------------------
# Structured extraction


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    candidates: List[str] = []
    fenced = FENCED_JSON_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    braced = BRACED_RE.search(text)
    if braced:
        candidates.append(braced.group(0))
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


# ----------------------------------------------------------------------
# Heuristics (one per invocation)


def _heuristic_description(text: str) -> Optional[Dict[str, Any]]:
    return {"description": text.strip(), "assistance_tier": "full"}


def _heuristic_objectives(text: str) -> Optional[Dict[str, Any]]:
    texts = [match.group(1) for match in OBJECTIVE_LINE_RE.finditer(text) if match.group(1).strip()]
    if not texts:
        return None
    return {"learning_objectives": [{"code": f"LO{index}", "text": item} for index, item in enumerate(texts, start=1)]}


def _heuristic_structure(text: str) -> Optional[Dict[str, Any]]:
    return {"topics": [{"title": "Course Content", "subtopics": []}], "raw_content": text}


def _heuristic_build(text: str) -> Optional[Dict[str, Any]]:
    return {"topics": [], "assessments": [], "raw_content": text}


def _heuristic_template(text: str) -> Optional[Dict[str, Any]]:
    return {"analysis": text, "fields": [], "mappings": []}


HEURISTICS: Dict[int, Callable[[str], Optional[Dict[str, Any]]]] = {
    1: _heuristic_description,
    2: _heuristic_objectives,
    3: _heuristic_structure,
    4: _heuristic_build,
    5: _heuristic_template,
}


def parse_response(text: str | None, invocation: int) -> ParsedResponse:
    """Structured JSON first, then the invocation's heuristic, then raw."""
    raw = text or ""
    try:
        structured = _extract_json(raw)
        if structured is not None:
            return ParsedResponse(data=snake_keys(structured), mode=ParseMode.STRUCTURED, raw_content=raw)

        heuristic = HEURISTICS.get(invocation)
        if raw.strip() and heuristic is not None:
            data = heuristic(raw)
            if data is not None:
                LOGGER.warning("Invocation %s response was not JSON; used text heuristic", invocation)
                data["parse_error"] = True
                return ParsedResponse(data=data, mode=ParseMode.HEURISTIC, raw_content=raw)
    except (TypeError, ValueError, re.error) as exc:
        LOGGER.warning("Invocation %s response parsing failed: %s", invocation, exc)

    LOGGER.warning("Invocation %s response could not be parsed; returning raw content", invocation)
    return ParsedResponse(data={"raw_content": raw, "parse_error": True}, mode=ParseMode.RAW, raw_content=raw)


# ----------------------------------------------------------------------
# Typed results


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def count_lessons(topics: Any) -> int:
    total = 0
    for topic in _as_list(topics):
        if not isinstance(topic, Mapping):
            continue
        for subtopic in _as_list(topic.get("subtopics")):
            if isinstance(subtopic, Mapping):
                total += len(_as_list(subtopic.get("lessons")))
    return total


class InvocationResult(CamelModel):
    """Common envelope: lenient coercion, extra keys dropped."""

    model_config = ConfigDict(extra="ignore")

    sources: List[Any] = Field(default_factory=list)
    raw_content: Optional[str] = None
    parse_error: bool = False

    @field_validator("sources", mode="before")
    @classmethod
    def listify_sources(cls, value: Any) -> Any:
        return _as_list(value)


class DescriptionResult(InvocationResult):
    description: str = ""
    assistance_tier: Optional[str] = None
    suggestions: List[Any] = Field(default_factory=list)

    @field_validator("description", mode="before")
    @classmethod
    def text_description(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)

    @field_validator("suggestions", mode="before")
    @classmethod
    def listify(cls, value: Any) -> Any:
        return _as_list(value)


class ObjectivesResult(InvocationResult):
    learning_objectives: List[Dict[str, Any]] = Field(default_factory=list)
    alignment_notes: str = ""

    @field_validator("learning_objectives", mode="before")
    @classmethod
    def keep_mappings(cls, value: Any) -> Any:
        items = []
        for item in _as_list(value):
            if isinstance(item, Mapping):
                items.append(dict(item))
            elif isinstance(item, str) and item.strip():
                items.append({"text": item.strip()})
        return items

    @field_validator("alignment_notes", mode="before")
    @classmethod
    def text_notes(cls, value: Any) -> Any:
        return "" if value is None else str(value)


class StructureResult(InvocationResult):
    topics: List[Dict[str, Any]] = Field(default_factory=list)
    estimated_duration: Any = None
    total_lessons: int = 0

    @field_validator("topics", mode="before")
    @classmethod
    def keep_topics(cls, value: Any) -> Any:
        return [dict(item) for item in _as_list(value) if isinstance(item, Mapping)]

    @model_validator(mode="after")
    def tally_lessons(self) -> "StructureResult":
        self.total_lessons = count_lessons(self.topics)
        return self


class BuildResult(InvocationResult):
    topics: List[Dict[str, Any]] = Field(default_factory=list)
    assessments: List[Dict[str, Any]] = Field(default_factory=list)
    activities: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Any = None

    @field_validator("topics", "assessments", "activities", mode="before")
    @classmethod
    def keep_mappings(cls, value: Any) -> Any:
        return [dict(item) for item in _as_list(value) if isinstance(item, Mapping)]


class TemplateMappingResult(InvocationResult):
    analysis: Any = None
    fields: List[Any] = Field(default_factory=list)
    mappings: List[Any] = Field(default_factory=list)
    automation_profile: Any = None

    @field_validator("fields", "mappings", mode="before")
    @classmethod
    def listify(cls, value: Any) -> Any:
        return _as_list(value)

    def presented(self) -> Dict[str, Any]:
        return {
            "template_analysis": self.analysis,
            "detected_fields": list(self.fields),
            "suggested_mappings": list(self.mappings),
            "automation_profile": self.automation_profile,
        }


RESULT_MODELS: Dict[int, Type[InvocationResult]] = {
    1: DescriptionResult,
    2: ObjectivesResult,
    3: StructureResult,
    4: BuildResult,
    5: TemplateMappingResult,
}


def coerce_result(invocation: int, parsed: ParsedResponse) -> InvocationResult:
    model = RESULT_MODELS[invocation]
    try:
        return model.model_validate(parsed.data)
    except ValidationError as exc:
        LOGGER.warning("Invocation %s result did not fit %s: %s", invocation, model.__name__, exc)
        return model(raw_content=parsed.raw_content, parse_error=True)


__all__ = [
    "BuildResult",
    "DescriptionResult",
    "InvocationResult",
    "ObjectivesResult",
    "ParseMode",
    "ParsedResponse",
    "RESULT_MODELS",
    "StructureResult",
    "TemplateMappingResult",
    "coerce_result",
    "count_lessons",
    "parse_response",
]
