"""Runtime wiring for the PKE engine."""

from __future__ import annotations

from .bootstrap import bootstrap_engine
from .context import EngineContext

__all__ = ["EngineContext", "bootstrap_engine"]
