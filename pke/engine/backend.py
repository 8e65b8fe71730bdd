"""Generation backends: the DSPy-backed LM client and a deterministic offline stand-in."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

import dspy

from pke.core.config import GenerationConfig
from pke.core.dspy_runtime import DSPyConfigurationError, configure_generation_lm
from pke.core.errors import GenerationError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationRequest:
    invocation: int
    system_prompt: str
    user_message: str
    context: Mapping[str, Any] = field(default_factory=dict)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    is_revision: bool = False


@dataclass(frozen=True)
class GenerationResponse:
    content: str
    usage: Dict[str, Optional[int]] = field(default_factory=dict)
    model: Optional[str] = None
    finish_reason: Optional[str] = None
    provider: Optional[str] = None


@runtime_checkable
class GenerationBackend(Protocol):
    """Blocking text generation; the orchestrator runs it in a worker thread."""

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        ...


def _normalize_lm_output(raw: Any) -> str:
    if isinstance(raw, list):
        parts = []
        for part in raw:
            if isinstance(part, Mapping):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "\n".join(parts)
    return "" if raw is None else str(raw)


def _usage_from_history(lm: Any) -> Dict[str, Optional[int]]:
    history = getattr(lm, "history", None)
    if not isinstance(history, list) or not history:
        return {}
    entry = history[-1]
    if not isinstance(entry, Mapping):
        return {}
    usage = entry.get("usage")
    if not usage and isinstance(entry.get("response"), Mapping):
        usage = entry["response"].get("usage")
    if not isinstance(usage, Mapping):
        return {}
    return {
        "prompt_tokens": usage.get("prompt_tokens"),
        "completion_tokens": usage.get("completion_tokens"),
        "total_tokens": usage.get("total_tokens"),
    }


class DSPyGenerationBackend:
    """Sends system + user messages through a configured DSPy LM."""

    def __init__(self, lm: Any, *, model: str | None = None, provider: str = "openai") -> None:
        self.lm = lm
        self.model = model
        self.provider = provider

    @classmethod
    def from_config(cls, cfg: GenerationConfig, *, api_key: str | None = None) -> "DSPyGenerationBackend":
        return cls(configure_generation_lm(cfg, api_key=api_key), model=cfg.model, provider=cfg.provider)

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        kwargs: Dict[str, Any] = {}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens

        legacy_cls = getattr(dspy, "OpenAI", None)
        try:
            if isinstance(legacy_cls, type) and isinstance(self.lm, legacy_cls):
                # the legacy client builds its own chat messages from a single prompt
                raw = self.lm(f"{request.system_prompt}\n\n{request.user_message}", **kwargs)
            else:
                messages: List[Dict[str, str]] = [
                    {"role": "system", "content": request.system_prompt},
                    {"role": "user", "content": request.user_message},
                ]
                raw = self.lm(messages=messages, **kwargs)
        except Exception as exc:
            raise GenerationError(f"LLM generation failed: {exc}") from exc

        content = _normalize_lm_output(raw)
        if not content.strip():
            raise GenerationError("LLM generation failed: empty response")
        return GenerationResponse(
            content=content,
            usage=_usage_from_history(self.lm),
            model=self.model,
            finish_reason="stop",
            provider=self.provider,
        )


class DeferredGenerationBackend:
    """Configures the DSPy LM on first use, so read-only tooling never needs an API key."""

    def __init__(self, cfg: GenerationConfig) -> None:
        self.cfg = cfg
        self._backend: DSPyGenerationBackend | None = None
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return self._backend is not None

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        with self._lock:
            if self._backend is None:
                try:
                    self._backend = DSPyGenerationBackend.from_config(self.cfg)
                except DSPyConfigurationError as exc:
                    raise GenerationError(f"LLM backend is not configured: {exc}") from exc
        return self._backend.generate(request)


class OfflineGenerationBackend:
    """Deterministic JSON responses derived from the context bundle; no network."""

    model = "offline"
    provider = "offline"

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        builder = getattr(self, f"_invocation{request.invocation}", None)
        if builder is None:
            raise GenerationError(f"Offline backend has no response for invocation {request.invocation}")
        payload = builder(request.context)
        content = "```json\n" + json.dumps(payload, indent=2) + "\n```"
        return GenerationResponse(content=content, usage={}, model=self.model, finish_reason="stop", provider=self.provider)

    # ------------------------------------------------------------------

    @staticmethod
    def _title(context: Mapping[str, Any]) -> str:
        return str(context.get("course_title") or "Untitled course")

    def _invocation1(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        title = self._title(context)
        audience = context.get("target_audience") or "working professionals"
        return {
            "description": (
                f"{title} introduces the core ideas of the subject for {audience}. "
                "Learners move from foundational concepts to applied practice through guided examples."
            ),
            "assistanceTier": context.get("requested_assistance_tier") or "full",
            "suggestions": ["Clarify prerequisite knowledge", "Name the capstone outcome"],
            "sources": [],
        }

    def _invocation2(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        title = self._title(context)
        levels = list(context.get("bloom_levels") or ["understand", "apply", "analyze"])
        count = int(context.get("requested_count") or 5)
        objectives = [
            {
                "code": f"LO{index}",
                "text": f"{levels[(index - 1) % len(levels)].capitalize()} key concept {index} of {title}",
                "bloomLevel": levels[(index - 1) % len(levels)],
            }
            for index in range(1, count + 1)
        ]
        return {"learningObjectives": objectives, "alignmentNotes": "Objectives follow the course description.", "sources": []}

    def _invocation3(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        objectives = context.get("learning_objectives") or [{"code": "LO1", "text": self._title(context)}]
        topics = [
            {
                "title": f"Topic {index}: {objective.get('text', '')}".strip(),
                "order": index,
                "subtopics": [
                    {
                        "title": "Foundations",
                        "lessons": [
                            {"title": "Overview", "duration": 30, "performanceCriteria": [f"Explain {objective.get('code', '')}".strip()]}
                        ],
                    }
                ],
            }
            for index, objective in enumerate(objectives, start=1)
        ]
        return {"topics": topics, "estimatedDuration": {"total": 30 * len(topics), "unit": "minutes"}, "sources": []}

    def _invocation4(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        structure = context.get("structure") or {}
        topics = structure.get("topics") or []
        objectives = context.get("learning_objectives") or []
        assessments = []
        if context.get("include_assessments", True):
            assessments = [
                {
                    "question": f"Which statement best reflects {objective.get('code', 'the objective')}?",
                    "type": "MCQ",
                    "options": ["A", "B", "C", "D"],
                    "correctAnswer": "A",
                    "linkedLO": objective.get("code"),
                }
                for objective in objectives
            ]
        activities = []
        if context.get("include_activities", True):
            activities = [{"title": "Group discussion", "type": "discussion", "description": "Discuss the key ideas.", "duration": 20}]
        return {
            "topics": topics,
            "assessments": assessments,
            "activities": activities,
            "summary": {"totalTopics": len(topics), "totalAssessments": len(assessments), "totalActivities": len(activities)},
            "sources": [],
        }

    def _invocation5(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        content = str(context.get("template_content") or "")
        placeholders = sorted({token.strip("{} ") for token in content.split() if token.startswith("{{") and token.endswith("}}")})
        return {
            "analysis": f"Template with {len(placeholders)} placeholder(s).",
            "fields": [{"name": name, "type": "text", "location": "body", "required": True} for name in placeholders],
            "mappings": [{"field": name, "source": f"course.{name}", "transform": "none"} for name in placeholders],
            "automationProfile": {"automatable": 100 if placeholders else 0, "manualFields": []},
        }


__all__ = [
    "DSPyGenerationBackend",
    "DeferredGenerationBackend",
    "GenerationBackend",
    "GenerationRequest",
    "GenerationResponse",
    "OfflineGenerationBackend",
]
