"""Invocation workflow engine: gating, context packaging, parsing, grading, orchestration."""

from .backend import DSPyGenerationBackend, GenerationBackend, GenerationRequest, GenerationResponse, OfflineGenerationBackend
from .context import ContextBundle, build_context, build_revision_context
from .gating import GateResult, GatingEngine, check_gate_b, check_prerequisites, check_stage
from .grading import calculate_overall_score, generate_evidence_report, grade
from .orchestrator import InvocationOrchestrator, InvocationOutcome, InvocationState
from .parsing import ParsedResponse, parse_response
from .retriever import AnchorRetriever, InMemoryAnchorRepository, RetrievedAnchors

__all__ = [
    "AnchorRetriever",
    "ContextBundle",
    "DSPyGenerationBackend",
    "GateResult",
    "GatingEngine",
    "GenerationBackend",
    "GenerationRequest",
    "GenerationResponse",
    "InMemoryAnchorRepository",
    "InvocationOrchestrator",
    "InvocationOutcome",
    "InvocationState",
    "OfflineGenerationBackend",
    "ParsedResponse",
    "RetrievedAnchors",
    "build_context",
    "build_revision_context",
    "calculate_overall_score",
    "check_gate_b",
    "check_prerequisites",
    "check_stage",
    "generate_evidence_report",
    "grade",
    "parse_response",
]
