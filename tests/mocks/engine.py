"""Shared fakes for engine tests: a scripted backend and course/orchestrator factories."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, List

from pke.core.audit import AuditLogger
from pke.core.models import Course, CourseMetadata
from pke.engine.backend import GenerationRequest, GenerationResponse
from pke.engine.orchestrator import InvocationOrchestrator
from pke.engine.retriever import AnchorRetriever, InMemoryAnchorRepository
from pke.store import InMemoryCourseStore

OWNER = "owner-1"
COLLABORATOR = "collab-1"
STRANGER = "stranger-9"
COURSE_ID = "course-7f3a9c"


def fenced(payload: Any) -> str:
    return "```json\n" + json.dumps(payload) + "\n```"


class ScriptedBackend:
    """Replays queued replies; exceptions are raised and callables get the request.

    The last reply repeats once the queue is drained.
    """

    def __init__(self, *replies: Any, delay: float = 0.0) -> None:
        self.replies: List[Any] = list(replies) or [fenced({})]
        self.requests: List[GenerationRequest] = []
        self.delay = delay

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(request)
        if isinstance(reply, dict):
            reply = fenced(reply)
        return GenerationResponse(
            content=reply,
            usage={"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18},
            model="scripted-model",
            finish_reason="stop",
            provider="scripted",
        )


def make_course(**overrides: Any) -> Course:
    payload: dict = {
        "id": COURSE_ID,
        "title": "Applied Data Science",
        "owner": OWNER,
        "collaborators": [COLLABORATOR],
        "metadata": CourseMetadata(domain="data science", level="beginner", target_audience="business analysts"),
    }
    payload.update(overrides)
    return Course(**payload)


def make_retriever(
    *,
    policies: List[dict] | None = None,
    knowledge_packs: List[dict] | None = None,
    templates: List[dict] | None = None,
) -> AnchorRetriever:
    return AnchorRetriever(
        policies=InMemoryAnchorRepository("policy", policies or []),
        knowledge_packs=InMemoryAnchorRepository("knowledge_pack", knowledge_packs or []),
        templates=InMemoryAnchorRepository("template", templates or []),
    )


def make_orchestrator(
    tmp_path: Path,
    backend: Any,
    *courses: Course,
    store: InMemoryCourseStore | None = None,
    retriever: AnchorRetriever | None = None,
    **kwargs: Any,
) -> tuple[InvocationOrchestrator, InMemoryCourseStore, AuditLogger]:
    store = store if store is not None else InMemoryCourseStore()
    for course in courses:
        store.save(course)
    audit = AuditLogger(Path(tmp_path) / "audit.jsonl")
    orchestrator = InvocationOrchestrator(store=store, audit=audit, backend=backend, retriever=retriever, **kwargs)
    return orchestrator, store, audit

