"""
Typed configuration helpers for the PKE engine.

The YAML layout mirrors ``config/pke.yaml``; environment variables override
the generation settings so deployments can swap models without editing files.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

TRUTHY = {"1", "true", "yes", "on"}


class InvocationModelConfig(BaseModel):
    """Sampling overrides for a single invocation."""

    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=64)


def _default_invocation_models() -> Dict[int, InvocationModelConfig]:
    return {
        1: InvocationModelConfig(temperature=0.7, max_tokens=2000),
        2: InvocationModelConfig(temperature=0.5, max_tokens=3000),
        3: InvocationModelConfig(temperature=0.6, max_tokens=4000),
        4: InvocationModelConfig(temperature=0.4, max_tokens=8000),
        5: InvocationModelConfig(temperature=0.3, max_tokens=2000),
    }


class GenerationConfig(BaseModel):
    """Provider settings for the text-generation backend."""

    model_config = ConfigDict(extra="allow")

    provider: Literal["openai"] = "openai"
    model: str = "gpt-4o"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4000, ge=64)
    api_key_env: str | None = None
    api_base: str | None = None
    api_base_env: str | None = None
    timeout_seconds: float = Field(default=120.0, gt=0)
    offline: bool = False
    invocations: Dict[int, InvocationModelConfig] = Field(default_factory=_default_invocation_models)

    @field_validator("invocations", mode="before")
    @classmethod
    def merge_invocation_defaults(cls, value: Any) -> Any:
        if value is None:
            return _default_invocation_models()
        if not isinstance(value, dict):
            return value
        merged: Dict[int, Any] = {key: cfg.model_dump() for key, cfg in _default_invocation_models().items()}
        for key, override in value.items():
            number = int(str(key).removeprefix("invocation"))
            base = merged.get(number, {})
            if isinstance(override, dict):
                base = {**base, **{k: v for k, v in override.items() if v is not None}}
            merged[number] = base
        return merged

    @property
    def extra_kwargs(self) -> Dict[str, Any]:
        return getattr(self, "model_extra", None) or {}

    def sampling_for(self, invocation: int) -> InvocationModelConfig:
        """Resolve temperature/max_tokens for an invocation, falling back to the defaults."""
        override = self.invocations.get(invocation) or InvocationModelConfig()
        return InvocationModelConfig(
            temperature=override.temperature if override.temperature is not None else self.temperature,
            max_tokens=override.max_tokens if override.max_tokens is not None else self.max_tokens,
        )


class StoreConfig(BaseModel):
    """Where course documents live."""

    backend: Literal["memory", "sqlite"] = "sqlite"
    sqlite_path: Path = Field(default=Path("outputs/pke/courses.sqlite"))

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def coerce_path(cls, value: Any) -> Path:
        return Path(value).expanduser()


class AuditConfig(BaseModel):
    """Append-only audit log location and retention window."""

    log_path: Path = Field(default=Path("outputs/pke/audit.jsonl"))
    retention_days: int = Field(default=90, ge=1)

    @field_validator("log_path", mode="before")
    @classmethod
    def coerce_path(cls, value: Any) -> Path:
        return Path(value).expanduser()


class EngineSettings(BaseModel):
    """Behavioural switches for the orchestrator."""

    revalidate_on_accept: bool = True
    default_evidence_grade: Literal["A", "B", "C", "D"] = "D"


class PKEConfig(BaseModel):
    """Top-level configuration for the engine and its collaborators."""

    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    engine: EngineSettings = Field(default_factory=EngineSettings)

    @model_validator(mode="before")
    @classmethod
    def coerce_legacy_llm_block(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        # Accept the older top-level "llm" block as an alias for "generation".
        legacy = payload.pop("llm", None)
        if isinstance(legacy, dict) and "generation" not in payload:
            payload["generation"] = legacy
        return payload


def read_yaml_file(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return a dictionary."""
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected mapping at root of {path}, received {type(data)}")
    return data


def _resolve_config_path(value: Any, base_dir: Path) -> str:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    else:
        path = path.resolve()
    return str(path)


def _absolutize_paths(data: Dict[str, Any], base_dir: Path) -> None:
    store = data.get("store")
    if isinstance(store, dict) and store.get("sqlite_path"):
        store["sqlite_path"] = _resolve_config_path(store["sqlite_path"], base_dir)

    audit = data.get("audit")
    if isinstance(audit, dict) and audit.get("log_path"):
        audit["log_path"] = _resolve_config_path(audit["log_path"], base_dir)


def apply_env_overrides(config: PKEConfig, environ: Optional[Dict[str, str]] = None) -> PKEConfig:
    """Return a copy of ``config`` with LLM_* / PKE_* environment overrides applied."""
    env = os.environ if environ is None else environ
    updates: Dict[str, Any] = {}
    if env.get("LLM_MODEL"):
        updates["model"] = env["LLM_MODEL"]
    if env.get("LLM_TEMPERATURE"):
        updates["temperature"] = float(env["LLM_TEMPERATURE"])
    if env.get("LLM_MAX_TOKENS"):
        updates["max_tokens"] = int(env["LLM_MAX_TOKENS"])
    offline = env.get("PKE_OFFLINE_GENERATION")
    if offline is not None:
        updates["offline"] = offline.strip().lower() in TRUTHY
    if not updates:
        return config
    payload = config.generation.model_dump()
    payload.update(updates)
    try:
        generation = GenerationConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError("Invalid generation overrides in environment") from exc
    return config.model_copy(update={"generation": generation})


def load_config(path: Path, *, base_dir: Path | None = None) -> PKEConfig:
    """Load the engine config YAML; relative paths resolve against ``base_dir``."""
    path = path.expanduser().resolve()
    data = read_yaml_file(path)
    _absolutize_paths(data, base_dir=(base_dir or path.parent).resolve())
    try:
        return PKEConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid PKE config in {path}") from exc


__all__ = [
    "AuditConfig",
    "EngineSettings",
    "GenerationConfig",
    "InvocationModelConfig",
    "PKEConfig",
    "StoreConfig",
    "apply_env_overrides",
    "load_config",
    "read_yaml_file",
]
