"""
Foundational models, configuration, audit, and validation utilities.

The engine package depends on these, never the other way around.
"""

from .audit import AuditAction, AuditLogger, AuditRecord
from .config import PKEConfig, load_config
from .errors import AcceptanceConflict, GatingError, GenerationError, InvocationInputError, NotFoundError, PKEError
from .models import Course, EvidenceGrade, InvocationRequest, Stage

__all__ = [
    "AcceptanceConflict",
    "AuditAction",
    "AuditLogger",
    "AuditRecord",
    "Course",
    "EvidenceGrade",
    "GatingError",
    "GenerationError",
    "InvocationInputError",
    "InvocationRequest",
    "NotFoundError",
    "PKEConfig",
    "PKEError",
    "Stage",
    "load_config",
]
