"""Helpers for configuring the DSPy language model behind the generation backend."""

from __future__ import annotations

import os
from typing import Any, Dict

import dspy

from pke.core.config import GenerationConfig


class DSPyConfigurationError(RuntimeError):
    """Raised when DSPy cannot be configured for the requested run."""


def _build_openai_lm(
    model_name: str,
    *,
    api_key: str,
    temperature: float,
    max_tokens: int,
    api_base: str | None = None,
    extra_kwargs: Dict[str, Any] | None = None,
) -> object:
    lm_cls = getattr(dspy, "OpenAI", None)
    kwargs: Dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if api_base:
        kwargs["api_base"] = api_base
    if extra_kwargs:
        kwargs.update(extra_kwargs)
    kwargs["api_key"] = api_key
    if lm_cls is None:
        # generic LiteLLM-backed wrapper wants a provider-prefixed model id
        lm_cls = dspy.LM
        if "/" not in model_name:
            kwargs["model"] = f"openai/{model_name}"
    return lm_cls(**kwargs)


def _resolve_api_key(cfg: GenerationConfig) -> str | None:
    preferred_envs = []
    if cfg.api_key_env:
        preferred_envs.append(cfg.api_key_env)
    preferred_envs.append("PKE_OPENAI_API_KEY")
    preferred_envs.append("OPENAI_API_KEY")
    for env_var in preferred_envs:
        if env_var and (value := os.getenv(env_var)):
            return value
    return None


def _resolve_api_base(cfg: GenerationConfig) -> str | None:
    if cfg.api_base:
        return cfg.api_base
    env_candidates = []
    if cfg.api_base_env:
        env_candidates.append(cfg.api_base_env)
    env_candidates.append("PKE_OPENAI_API_BASE")
    env_candidates.append("OPENAI_API_BASE")
    for env_var in env_candidates:
        if env_var and (value := os.getenv(env_var)):
            return value
    return None


def configure_generation_lm(cfg: GenerationConfig, *, api_key: str | None = None) -> object:
    """Instantiate the DSPy LM used for every invocation."""

    if cfg.provider != "openai":
        raise DSPyConfigurationError(f"Unsupported provider '{cfg.provider}'")

    resolved_key = api_key or _resolve_api_key(cfg)
    if not resolved_key:
        expected_env = cfg.api_key_env or "OPENAI_API_KEY"
        raise DSPyConfigurationError(f"Missing API key for generation; set {expected_env}.")

    return _build_openai_lm(
        cfg.model,
        api_key=resolved_key,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
        api_base=_resolve_api_base(cfg),
        extra_kwargs=cfg.extra_kwargs,
    )


__all__ = ["DSPyConfigurationError", "configure_generation_lm"]
