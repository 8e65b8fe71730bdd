"""Shared runtime context for the engine and its surfaces."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pke.core.audit import AuditLogger
from pke.core.config import PKEConfig
from pke.engine.gating import GatingEngine
from pke.engine.orchestrator import InvocationOrchestrator
from pke.engine.retriever import AnchorRetriever


class EngineContext(BaseModel):
    """Everything a request handler or CLI command needs, wired once at startup."""

    config: PKEConfig
    repo_root: Path
    store: Any
    audit: AuditLogger
    retriever: AnchorRetriever
    gating: GatingEngine
    orchestrator: InvocationOrchestrator
    env: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("repo_root", mode="before")
    @classmethod
    def _expand(cls, value: Path | str) -> Path:
        return Path(value).expanduser().resolve()
