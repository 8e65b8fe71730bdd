"""Invocation orchestrator: one attempt from context building to an ephemeral result.

An attempt moves through ``requested -> context_built -> generating -> parsed
-> graded -> validated`` and ends ``accepted``, ``revision_requested`` or
``failed``. Only :meth:`InvocationOrchestrator.accept` mutates a course; the
backend call is the only await point.
"""

from __future__ import annotations

import functools
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

import anyio

from pke.core.audit import AuditAction, AuditLogger, AuditRecord, InvocationDetails, LLMDetails
from pke.core.config import GenerationConfig
from pke.core.errors import GenerationError, InvocationInputError, NotFoundError, PKEError
from pke.core.models import (
    CompletedInvocation,
    Course,
    EvidenceGrade,
    InvocationRequest,
    RevisionEntry,
    snake_keys,
)
from pke.core.validation import InvocationValidator, ValidationResult

from .backend import GenerationBackend, GenerationRequest, GenerationResponse
from .context import ContextBundle, build_context, build_revision_context
from .gating import check_gate_b, check_prerequisites, check_stage
from .grading import coerce_grade, grade
from .invocations import InvocationSpec, get_invocation
from .parsing import InvocationResult, ParsedResponse, coerce_result, parse_response
from .prompts import build_system_prompt, build_user_message
from .retriever import AnchorRetriever, RetrievedAnchors

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class InvocationState(str, Enum):
    REQUESTED = "requested"
    CONTEXT_BUILT = "context_built"
    GENERATING = "generating"
    PARSED = "parsed"
    GRADED = "graded"
    VALIDATED = "validated"
    ACCEPTED = "accepted"
    REVISION_REQUESTED = "revision_requested"
    FAILED = "failed"


@dataclass
class InvocationOutcome:
    """Ephemeral result of one attempt; nothing here is persisted."""

    invocation: int
    result: Dict[str, Any]
    evidence_grade: EvidenceGrade
    validation: ValidationResult
    actions: List[str]
    parse_error: bool = False
    next_steps: List[str] = field(default_factory=list)
    is_revision: bool = False
    duration_ms: int = 0
    states: List[InvocationState] = field(default_factory=list)

    @property
    def state(self) -> InvocationState:
        return self.states[-1] if self.states else InvocationState.REQUESTED

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "invocation": self.invocation,
            "result": self.result,
            "evidence_grade": self.evidence_grade.value,
            "validation": self.validation.as_dict(),
            "actions": list(self.actions),
            "parse_error": self.parse_error,
        }
        if self.next_steps:
            payload["next_steps"] = list(self.next_steps)
        if self.is_revision:
            payload["message"] = "Revision generated"
        return payload


class InvocationOrchestrator:
    """Runs invocations against an injected backend, store, audit sink and retriever."""

    def __init__(
        self,
        *,
        store: Any,
        audit: AuditLogger,
        backend: GenerationBackend,
        generation: GenerationConfig | None = None,
        retriever: AnchorRetriever | None = None,
        validator: InvocationValidator | None = None,
        revalidate_on_accept: bool = True,
        default_evidence_grade: str = "D",
        timeout_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.backend = backend
        self.generation = generation or GenerationConfig()
        self.retriever = retriever
        self.validator = validator or InvocationValidator()
        self.revalidate_on_accept = revalidate_on_accept
        self.default_evidence_grade = coerce_grade(default_evidence_grade) or EvidenceGrade.D
        self.timeout_seconds = float(timeout_seconds or self.generation.timeout_seconds or DEFAULT_TIMEOUT_SECONDS)

    # ------------------------------------------------------------------
    # Generation

    async def invoke(self, request: InvocationRequest, course: Course | None = None) -> InvocationOutcome:
        """Generate an ephemeral result for an admitted request."""
        spec = get_invocation(request.invocation)
        if request.is_revision:
            course = course or self._load_course(request.course_id)
            return await self.revise(
                course,
                spec.number,
                feedback=request.feedback,
                specific_changes=request.specific_changes,
                user_id=request.user_id,
            )

        params = snake_keys(request.params())
        if spec.requires_course:
            course = course or self._load_course(request.course_id)
        else:
            course = None
            params = self._resolve_template(params)

        anchors = self._retrieve(course) if course is not None else None
        trail = [InvocationState.REQUESTED]
        bundle = build_context(spec.number, course, params, anchors)
        trail.append(InvocationState.CONTEXT_BUILT)

        return await self._run_attempt(
            spec,
            bundle,
            anchors=anchors,
            course=course,
            user_id=request.user_id,
            audit_input=spec.audit_input(params),
            trail=trail,
        )

    async def revise(
        self,
        course: Course,
        invocation: int,
        *,
        feedback: str | None = None,
        specific_changes: Sequence[str] | None = None,
        user_id: str | None = None,
    ) -> InvocationOutcome:
        """Regenerate with feedback; the course is never modified."""
        spec = get_invocation(invocation)
        if not spec.acceptable:
            raise InvocationInputError(f"Invocation {spec.number} does not support revisions")
        changes = [str(item) for item in specific_changes or []]
        if not (feedback and feedback.strip()) and not changes:
            raise InvocationInputError(
                "Provide feedback or specific changes for revision", code="REVISION_INPUT_REQUIRED"
            )

        anchors = self._retrieve(course)
        trail = [InvocationState.REQUESTED]
        bundle = build_revision_context(course, spec.number, feedback, changes, anchors)
        trail.append(InvocationState.CONTEXT_BUILT)

        return await self._run_attempt(
            spec,
            bundle,
            anchors=anchors,
            course=course,
            user_id=user_id,
            audit_input={"feedback": feedback, "specific_changes": changes},
            trail=trail,
        )

    async def _run_attempt(
        self,
        spec: InvocationSpec,
        bundle: ContextBundle,
        *,
        anchors: RetrievedAnchors | None,
        course: Course | None,
        user_id: str | None,
        audit_input: Dict[str, Any],
        trail: List[InvocationState],
    ) -> InvocationOutcome:
        started = time.perf_counter()
        response: GenerationResponse | None = None
        try:
            trail.append(InvocationState.GENERATING)
            response = await self._generate(spec, bundle)

            parsed = parse_response(response.content, spec.number)
            result = self._coerce(spec, parsed)
            trail.append(InvocationState.PARSED)

            if spec.number == 5:
                evidence = EvidenceGrade.A
            else:
                evidence = grade(spec.number, result.sources, **spec.grading_flags(anchors))
            trail.append(InvocationState.GRADED)
        except Exception as exc:
            duration_ms = self._elapsed_ms(started)
            trail.append(InvocationState.FAILED)
            self._audit_failure(spec, bundle, course, user_id, audit_input, duration_ms, exc)
            if isinstance(exc, GenerationError):
                raise
            raise GenerationError(f"Invocation {spec.number} failed: {exc}") from exc

        validation = self.validator.validate(spec.number, result.model_dump(mode="json"))
        trail.append(InvocationState.VALIDATED)
        if bundle.is_revision:
            trail.append(InvocationState.REVISION_REQUESTED)

        duration_ms = self._elapsed_ms(started)
        outcome = InvocationOutcome(
            invocation=spec.number,
            result=spec.present(result),
            evidence_grade=evidence,
            validation=validation,
            actions=list(spec.actions),
            parse_error=parsed.parse_error,
            next_steps=list(spec.next_steps) if not bundle.is_revision else [],
            is_revision=bundle.is_revision,
            duration_ms=duration_ms,
            states=trail,
        )
        self._audit_success(spec, bundle, course, user_id, audit_input, result, outcome, response)
        LOGGER.info(
            "Invocation %s %s in %sms (grade %s, parse=%s)",
            spec.number,
            "revised" if bundle.is_revision else "completed",
            duration_ms,
            evidence.value,
            parsed.mode.value,
        )
        return outcome

    async def _generate(self, spec: InvocationSpec, bundle: ContextBundle) -> GenerationResponse:
        sampling = self.generation.sampling_for(spec.number)
        request = GenerationRequest(
            invocation=spec.number,
            system_prompt=build_system_prompt(spec.number, is_revision=bundle.is_revision),
            user_message=build_user_message(spec.number, bundle.to_json()),
            context=bundle.as_dict(),
            temperature=sampling.temperature,
            max_tokens=sampling.max_tokens,
            is_revision=bundle.is_revision,
        )
        try:
            with anyio.fail_after(self.timeout_seconds):
                response = await anyio.to_thread.run_sync(
                    functools.partial(self.backend.generate, request), abandon_on_cancel=True
                )
        except TimeoutError as exc:
            raise GenerationError(f"LLM generation timed out after {self.timeout_seconds:g}s") from exc
        if response is None or not str(response.content or "").strip():
            raise GenerationError("LLM generation failed: empty response")
        return response

    @staticmethod
    def _coerce(spec: InvocationSpec, parsed: ParsedResponse) -> InvocationResult:
        result = coerce_result(spec.number, parsed)
        if parsed.parse_error and result.raw_content is None:
            result = result.model_copy(update={"raw_content": parsed.raw_content, "parse_error": True})
        return result

    # ------------------------------------------------------------------
    # Accept

    def accept(
        self,
        course_id: str | None,
        invocation: int,
        content: Mapping[str, Any],
        evidence_grade: EvidenceGrade | str | None = None,
        user_id: str | None = None,
    ) -> Dict[str, Any]:
        """Write accepted content into the course in one versioned save."""
        spec = get_invocation(invocation)
        if not spec.acceptable:
            raise InvocationInputError(f"Invocation {spec.number} output cannot be accepted into a course")
        accepted_grade = self._accepted_grade(evidence_grade)
        course = self._load_course(course_id)

        if self.revalidate_on_accept:
            check_gate_b(course, user_id).raise_for_failure()
            check_prerequisites(course, spec.number).raise_for_failure()
            check_stage(course, spec.accept_stages).raise_for_failure()

        updated = course.snapshot()
        spec.accept_into(updated, content, accepted_grade)
        updated.completed_invocations.append(
            CompletedInvocation(invocation=spec.number, evidence_grade=accepted_grade)
        )
        if spec.target_stage is not None and spec.target_stage.rank > updated.current_stage.rank:
            updated.current_stage = spec.target_stage
        updated.revision_history.append(
            RevisionEntry(
                version=len(updated.revision_history) + 1,
                changed_by=user_id,
                change_type=f"INVOCATION_{spec.number}_ACCEPTED",
                summary=f"Accepted Invocation {spec.number} output",
            )
        )

        saved = self.store.save(updated, expected_version=course.version)
        self.audit.log(
            AuditRecord(
                action=AuditAction.CONTENT_ACCEPTED,
                user_id=user_id,
                course_id=saved.id,
                course_title=saved.title,
                invocation=InvocationDetails(number=spec.number, evidence_grade=accepted_grade.value),
                metadata={"state": InvocationState.ACCEPTED.value},
            )
        )
        LOGGER.info("Invocation %s accepted for course %s (grade %s)", spec.number, saved.id, accepted_grade.value)
        return {
            "message": f"Invocation {spec.number} accepted",
            "course": saved,
            "next_invocation": spec.number + 1 if spec.number < 4 else None,
            "state": InvocationState.ACCEPTED,
        }

    def _accepted_grade(self, value: EvidenceGrade | str | None) -> EvidenceGrade:
        if value is None or value == "":
            return self.default_evidence_grade
        letter = coerce_grade(value)
        if letter is None:
            raise InvocationInputError(
                f"Unknown evidence grade '{value}'", details={"allowed": [item.value for item in EvidenceGrade]}
            )
        return letter

    # ------------------------------------------------------------------
    # Template mapping (invocation 5 follow-up)

    def apply_template_mapping(
        self,
        course_id: str | None,
        *,
        mappings: Sequence[Any] | None = None,
        mapping_profile_id: str | None = None,
        user_id: str | None = None,
    ) -> Dict[str, Any]:
        if not course_id or (not mapping_profile_id and mappings is None):
            raise InvocationInputError("Course ID and mapping profile or mappings required")
        course = self._load_course(course_id)
        applied = list(mappings or [])
        self.audit.log(
            AuditRecord(
                action=AuditAction.ADMIN_ACTION,
                user_id=user_id,
                course_id=course.id,
                course_title=course.title,
                metadata={
                    "action": "TEMPLATE_MAPPING_APPLIED",
                    "mapping_profile_id": mapping_profile_id,
                    "mappings_count": len(applied),
                },
            )
        )
        return {"message": "Template mapping applied", "course_id": course.id, "applied_mappings": len(applied)}

    # ------------------------------------------------------------------
    # Helpers

    def _load_course(self, course_id: str | None) -> Course:
        if not course_id:
            raise InvocationInputError("Course ID required", code="NO_COURSE_ID")
        course = self.store.get(course_id)
        if course is None:
            raise NotFoundError("Course not found", code="COURSE_NOT_FOUND")
        return course

    def _retrieve(self, course: Course) -> RetrievedAnchors | None:
        if self.retriever is None:
            return None
        return self.retriever.retrieve_anchors(
            course_title=course.title,
            domain=course.metadata.domain,
            level=course.metadata.level,
            target_audience=course.metadata.target_audience,
        )

    def _resolve_template(self, params: Dict[str, Any]) -> Dict[str, Any]:
        template_id = params.get("template_id")
        content = params.get("template_content")
        if not content and not template_id:
            raise InvocationInputError("Template content or template ID required")
        if content or not template_id:
            return params
        template = self.retriever.get_template(str(template_id)) if self.retriever else None
        if template is None:
            raise NotFoundError("Template not found", code="TEMPLATE_NOT_FOUND", details={"templateId": template_id})
        resolved = template.get("content") or template.get("structure") or template.get("description") or ""
        if not isinstance(resolved, str):
            resolved = json.dumps(resolved, indent=2)
        return {**params, "template_content": resolved}

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    def _audit_success(
        self,
        spec: InvocationSpec,
        bundle: ContextBundle,
        course: Course | None,
        user_id: str | None,
        audit_input: Dict[str, Any],
        result: InvocationResult,
        outcome: InvocationOutcome,
        response: GenerationResponse | None,
    ) -> None:
        usage = response.usage if response is not None else {}
        self.audit.log(
            AuditRecord(
                action=AuditAction.CONTENT_REVISED if bundle.is_revision else AuditAction.INVOCATION_COMPLETED,
                user_id=user_id,
                course_id=course.id if course else None,
                course_title=course.title if course else None,
                invocation=InvocationDetails(
                    number=spec.number,
                    input=audit_input,
                    output=spec.audit_output(result),
                    evidence_grade=outcome.evidence_grade.value,
                    duration_ms=outcome.duration_ms,
                ),
                llm_details=LLMDetails(
                    provider=getattr(response, "provider", None) or self.generation.provider,
                    model=getattr(response, "model", None) or self.generation.model,
                    prompt_tokens=usage.get("prompt_tokens"),
                    completion_tokens=usage.get("completion_tokens"),
                    total_tokens=usage.get("total_tokens"),
                ),
                metadata={"parse_error": outcome.parse_error, "valid": outcome.validation.valid},
            )
        )

    def _audit_failure(
        self,
        spec: InvocationSpec,
        bundle: ContextBundle,
        course: Course | None,
        user_id: str | None,
        audit_input: Dict[str, Any],
        duration_ms: int,
        exc: BaseException,
    ) -> None:
        message = exc.message if isinstance(exc, PKEError) else str(exc) or exc.__class__.__name__
        LOGGER.error("Invocation %s failed after %sms: %s", spec.number, duration_ms, message)
        self.audit.log(
            AuditRecord(
                action=AuditAction.INVOCATION_FAILED,
                user_id=user_id,
                course_id=course.id if course else None,
                course_title=course.title if course else None,
                invocation=InvocationDetails(number=spec.number, input=audit_input, duration_ms=duration_ms),
                success=False,
                error_message=message,
                metadata={"is_revision": bundle.is_revision},
            )
        )


__all__ = ["InvocationOrchestrator", "InvocationOutcome", "InvocationState"]
