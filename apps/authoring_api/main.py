from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, Path as PathParam, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.exceptions import HTTPException

from pke import get_version
from pke.core.audit import AuditAction, AuditRecord
from pke.core.errors import InvocationInputError, NotFoundError, PKEError
from pke.core.models import CamelModel, InvocationRequest, camel_keys
from pke.engine.grading import generate_evidence_report
from pke.runtime import EngineContext, bootstrap_engine

REPO_ROOT = Path(__file__).resolve().parents[2]
LOGGER = logging.getLogger(__name__)


class AuthoringSettings(BaseModel):
    """Runtime configuration for the authoring API."""

    repo_root: Path = Field(default=REPO_ROOT)
    config_path: Path | None = None


@lru_cache
def get_settings() -> AuthoringSettings:
    config_path = os.getenv("PKE_CONFIG")
    repo_root = os.getenv("PKE_REPO_ROOT")
    return AuthoringSettings(
        repo_root=Path(repo_root).expanduser().resolve() if repo_root else REPO_ROOT,
        config_path=Path(config_path).expanduser().resolve() if config_path else None,
    )


@lru_cache
def _engine_for(repo_root: Path, config_path: Path | None) -> EngineContext:
    return bootstrap_engine(config_path, repo_root=repo_root)


def get_engine(settings: AuthoringSettings = Depends(get_settings)) -> EngineContext:
    return _engine_for(settings.repo_root, settings.config_path)


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Identity:
    # Gate A: identity is asserted upstream; the engine only reads it
    if not x_user_id:
        raise PKEError("Authentication required", code="AUTH_REQUIRED", status_code=401, details={"gate": "A"})
    return Identity(user_id=x_user_id, role=(x_user_role or "user").strip().lower())


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise PKEError("Admin access required", code="ADMIN_REQUIRED", status_code=403)
    return identity


# ----------------------------------------------------------------------
# Request bodies


class InvokeBody(CamelModel):
    """``courseId`` plus free-form invocation parameters."""

    model_config = ConfigDict(extra="allow")

    course_id: Optional[str] = None

    def parameters(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"course_id"})


class TemplateInvokeBody(CamelModel):
    template_id: Optional[str] = None
    template_content: Optional[str] = None
    mapping_rules: List[Any] = Field(default_factory=list)


class ApplyMappingBody(CamelModel):
    course_id: Optional[str] = None
    mapping_profile_id: Optional[str] = None
    mappings: Optional[List[Any]] = None


class AcceptBody(CamelModel):
    course_id: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    evidence_grade: Optional[str] = None


class ReviseBody(CamelModel):
    course_id: Optional[str] = None
    feedback: Optional[str] = None
    specific_changes: List[str] = Field(default_factory=list)


class KnowledgePackIn(CamelModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    domain: Optional[str] = None
    content: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class TemplateIn(CamelModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    type: str = "course"
    description: Optional[str] = None
    structure: Any = None
    content: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class PolicyIn(CamelModel):
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    domain: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class AnchorKind(str, Enum):
    KNOWLEDGE_PACKS = "knowledge-packs"
    TEMPLATES = "templates"
    POLICIES = "policies"


ANCHOR_SCHEMAS = {
    AnchorKind.KNOWLEDGE_PACKS: KnowledgePackIn,
    AnchorKind.TEMPLATES: TemplateIn,
    AnchorKind.POLICIES: PolicyIn,
}


def _ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


app = FastAPI(title="PKE Authoring API", version=get_version())
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health(engine: EngineContext = Depends(get_engine)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "version": get_version(),
        "store": engine.config.store.backend,
        "offline": engine.config.generation.offline,
    }


# ----------------------------------------------------------------------
# Invocations (5 is registered first so it wins over /invoke/{number})


@app.post("/invoke/5")
async def invoke_template_mapping(
    body: TemplateInvokeBody,
    identity: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    if not body.template_content and not body.template_id:
        raise InvocationInputError("Template content or template ID required")
    request = InvocationRequest(
        invocation=5,
        user_id=identity.user_id,
        parameters=body.model_dump(),
    )
    outcome = await engine.orchestrator.invoke(request)
    return _ok(camel_keys(outcome.as_dict()))


@app.post("/invoke/5/apply")
def apply_template_mapping(
    body: ApplyMappingBody,
    identity: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    result = engine.orchestrator.apply_template_mapping(
        body.course_id,
        mappings=body.mappings,
        mapping_profile_id=body.mapping_profile_id,
        user_id=identity.user_id,
    )
    return _ok(camel_keys(result))


@app.post("/invoke/{number}")
async def invoke(
    body: InvokeBody,
    number: int = PathParam(..., ge=1, le=4),
    identity: Identity = Depends(get_identity),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    course = engine.gating.admit(body.course_id, identity.user_id, number)
    request = InvocationRequest(
        invocation=number,
        course_id=course.id,
        user_id=identity.user_id,
        parameters=body.parameters(),
    )
    outcome = await engine.orchestrator.invoke(request, course)
    return _ok(camel_keys(outcome.as_dict()))


@app.post("/invoke/{number}/accept")
def accept(
    body: AcceptBody,
    number: int = PathParam(..., ge=1, le=4),
    identity: Identity = Depends(get_identity),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    engine.gating.admit(body.course_id, identity.user_id, number)
    result = engine.orchestrator.accept(
        body.course_id,
        number,
        body.content,
        body.evidence_grade,
        identity.user_id,
    )
    return _ok(
        {
            "message": result["message"],
            "course": result["course"].to_api(),
            "nextInvocation": result["next_invocation"],
        }
    )


@app.post("/invoke/{number}/revise")
async def revise(
    body: ReviseBody,
    number: int = PathParam(..., ge=1, le=4),
    identity: Identity = Depends(get_identity),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    course = engine.gating.admit(body.course_id, identity.user_id, number)
    outcome = await engine.orchestrator.revise(
        course,
        number,
        feedback=body.feedback,
        specific_changes=body.specific_changes,
        user_id=identity.user_id,
    )
    return _ok(camel_keys(outcome.as_dict()))


@app.get("/courses/{course_id}/evidence")
def course_evidence(
    course_id: str,
    identity: Identity = Depends(get_identity),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    course = engine.store.get(course_id)
    if course is None:
        raise NotFoundError("Course not found", code="COURSE_NOT_FOUND")
    if not (identity.is_admin or course.has_access(identity.user_id)):
        raise PKEError("Access denied to this course", code="ACCESS_DENIED", status_code=403)
    return _ok(camel_keys(generate_evidence_report(course)))


# ----------------------------------------------------------------------
# Admin


@app.get("/admin/audit-logs")
def audit_logs(
    action: Optional[AuditAction] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    course_id: Optional[str] = Query(None, alias="courseId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    _: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    result = engine.audit.query(
        action=action,
        user_id=user_id,
        course_id=course_id,
        start=_aware(start_date),
        end=_aware(end_date),
        limit=limit,
        offset=(page - 1) * limit,
    )
    return _ok(
        {
            "logs": [camel_keys(record.model_dump(mode="json")) for record in result["records"]],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": result["total"],
                "pages": math.ceil(result["total"] / limit) if limit else 0,
            },
        }
    )


@app.get("/admin/stats")
def admin_stats(
    _: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    courses = engine.store.list()
    summary = engine.audit.summarize()
    return _ok(
        camel_keys(
            {
                "courses": {"total": len(courses), "published": sum(1 for c in courses if c.status == "published")},
                "invocations": summary,
                "generated_at": datetime.now(timezone.utc).isoformat(),
            }
        )
    )


def _anchor_repo(engine: EngineContext, kind: AnchorKind):
    return {
        AnchorKind.KNOWLEDGE_PACKS: engine.retriever.knowledge_packs,
        AnchorKind.TEMPLATES: engine.retriever.templates,
        AnchorKind.POLICIES: engine.retriever.policies,
    }[kind]


def _validated_anchor(kind: AnchorKind, payload: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    if partial:
        return {key: value for key, value in payload.items() if key != "id"}
    schema = ANCHOR_SCHEMAS[kind]
    try:
        return schema.model_validate(payload).model_dump(exclude_none=True)
    except ValidationError as exc:
        raise InvocationInputError(
            f"Invalid {kind.value} payload",
            details={"errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]},
        ) from exc


def _audit_admin(engine: EngineContext, identity: Identity, action: str, **metadata: Any) -> None:
    engine.audit.log(AuditRecord(action=AuditAction.ADMIN_ACTION, user_id=identity.user_id, metadata={"action": action, **metadata}))


@app.get("/admin/{kind}")
def list_anchors(
    kind: AnchorKind,
    _: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    return _ok([camel_keys(item) for item in _anchor_repo(engine, kind).list()])


@app.get("/admin/knowledge-packs/search")
def search_knowledge_packs(
    q: Optional[str] = Query(None),
    domain: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    _: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    results = engine.retriever.search_knowledge_packs(q, limit=limit, domain=domain)
    return _ok([camel_keys(item) for item in results])


@app.get("/admin/{kind}/{anchor_id}")
def get_anchor(
    kind: AnchorKind,
    anchor_id: str,
    _: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    item = _anchor_repo(engine, kind).get(anchor_id)
    if item is None:
        raise NotFoundError(f"{kind.value} entry not found", details={"id": anchor_id})
    return _ok(camel_keys(item))


@app.post("/admin/{kind}", status_code=201)
def create_anchor(
    kind: AnchorKind,
    payload: Dict[str, Any] = Body(...),
    identity: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    created = _anchor_repo(engine, kind).create(_validated_anchor(kind, payload))
    _audit_admin(engine, identity, f"{kind.name}_CREATED", id=created["id"])
    return _ok(camel_keys(created))


@app.put("/admin/{kind}/{anchor_id}")
def update_anchor(
    kind: AnchorKind,
    anchor_id: str,
    payload: Dict[str, Any] = Body(...),
    identity: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    updated = _anchor_repo(engine, kind).update(anchor_id, _validated_anchor(kind, payload, partial=True))
    _audit_admin(engine, identity, f"{kind.name}_UPDATED", id=anchor_id)
    return _ok(camel_keys(updated))


@app.delete("/admin/{kind}/{anchor_id}")
def delete_anchor(
    kind: AnchorKind,
    anchor_id: str,
    identity: Identity = Depends(require_admin),
    engine: EngineContext = Depends(get_engine),
) -> Dict[str, Any]:
    if not _anchor_repo(engine, kind).delete(anchor_id):
        raise NotFoundError(f"{kind.value} entry not found", details={"id": anchor_id})
    _audit_admin(engine, identity, f"{kind.name}_DELETED", id=anchor_id)
    return _ok({"deleted": anchor_id})


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ----------------------------------------------------------------------
# Error handlers


@app.exception_handler(PKEError)
async def pke_error_handler(_: Any, exc: PKEError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.error("Request failed: %s (%s)", exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Any, exc: RequestValidationError) -> JSONResponse:
    errors = [f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request", "code": "INVALID_INPUT", "errors": errors},
    )


@app.exception_handler(HTTPException)
async def http_error_handler(_: Any, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail, "code": "HTTP_ERROR"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(_: Any, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"},
    )
