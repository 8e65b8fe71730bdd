"""Bootstrap helpers that wire configuration into a ready-to-use engine."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv

from pke.core.audit import AuditLogger
from pke.core.config import PKEConfig, apply_env_overrides, load_config
from pke.core.dspy_runtime import DSPyConfigurationError
from pke.engine.backend import (
    DeferredGenerationBackend,
    DSPyGenerationBackend,
    GenerationBackend,
    OfflineGenerationBackend,
)
from pke.engine.gating import GatingEngine
from pke.engine.orchestrator import InvocationOrchestrator
from pke.engine.retriever import AnchorRetriever
from pke.store import InMemoryCourseStore, SQLiteCourseStore

from .context import EngineContext

DEFAULT_CONFIG_PATH = Path("config/pke.yaml")
LOGGER = logging.getLogger(__name__)


def _capture_env(keys: tuple[str, ...]) -> Dict[str, str]:
    """Return a filtered snapshot of environment variables (values of secrets are masked)."""
    snapshot: Dict[str, str] = {}
    for key in keys:
        value = os.getenv(key)
        if value is not None:
            snapshot[key] = "***" if "KEY" in key else value
    return snapshot


def build_store(config: PKEConfig):
    if config.store.backend == "memory":
        return InMemoryCourseStore()
    return SQLiteCourseStore(config.store.sqlite_path)


def build_backend(config: PKEConfig, *, lazy: bool = False) -> GenerationBackend:
    if config.generation.offline:
        LOGGER.info("Offline generation enabled; using deterministic backend.")
        return OfflineGenerationBackend()
    if lazy:
        return DeferredGenerationBackend(config.generation)
    try:
        return DSPyGenerationBackend.from_config(config.generation)
    except DSPyConfigurationError as exc:
        raise RuntimeError("Unable to configure DSPy/OpenAI generation model") from exc


def bootstrap_engine(
    config_path: Path | None = None,
    *,
    repo_root: Path | None = None,
    config: PKEConfig | None = None,
    store=None,
    backend: GenerationBackend | None = None,
    retriever: AnchorRetriever | None = None,
    env_keys: tuple[str, ...] = ("OPENAI_API_KEY", "LLM_MODEL", "PKE_OFFLINE_GENERATION"),
    lazy_backend: bool = False,
) -> EngineContext:
    """
    Load configuration and environment, then construct the engine context.

    Parameters
    ----------
    config_path:
        Path to the engine YAML. Defaults to ``config/pke.yaml`` when it exists,
        otherwise built-in defaults are used.
    repo_root:
        Root used for ``.env`` lookup and relative paths. Defaults to ``Path.cwd()``.
    config:
        Pre-built configuration; skips YAML loading when given.
    store, backend, retriever:
        Injected collaborators (tests pass fakes here).
    env_keys:
        Environment variables to snapshot on the context.
    lazy_backend:
        Defer LM configuration until the first generation call. Read-only
        tooling sets this so it runs without an API key.
    """

    repo_root = (repo_root or Path.cwd()).resolve()
    load_dotenv(repo_root / ".env")

    if config is None:
        resolved = (config_path or repo_root / DEFAULT_CONFIG_PATH).resolve()
        if resolved.exists():
            config = load_config(resolved, base_dir=repo_root)
        elif config_path is not None:
            raise FileNotFoundError(f"Config file not found: {resolved}")
        else:
            LOGGER.debug("No config at %s; using defaults", resolved)
            config = PKEConfig()
    config = apply_env_overrides(config)

    audit = AuditLogger(config.audit.log_path, retention_days=config.audit.retention_days)
    store = store if store is not None else build_store(config)
    retriever = retriever or AnchorRetriever()
    backend = backend or build_backend(config, lazy=lazy_backend)

    orchestrator = InvocationOrchestrator(
        store=store,
        audit=audit,
        backend=backend,
        generation=config.generation,
        retriever=retriever,
        revalidate_on_accept=config.engine.revalidate_on_accept,
        default_evidence_grade=config.engine.default_evidence_grade,
    )
    LOGGER.info(
        "PKE engine ready (store=%s, model=%s, offline=%s)",
        config.store.backend,
        config.generation.model,
        config.generation.offline,
    )
    return EngineContext(
        config=config,
        repo_root=repo_root,
        store=store,
        audit=audit,
        retriever=retriever,
        gating=GatingEngine(store, audit),
        orchestrator=orchestrator,
        env=_capture_env(env_keys),
    )


__all__ = ["DEFAULT_CONFIG_PATH", "bootstrap_engine", "build_backend", "build_store"]
