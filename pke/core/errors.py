"""Exception taxonomy shared by the engine, the store, and the HTTP surface."""

from __future__ import annotations

from typing import Any, Dict


class PKEError(RuntimeError):
    """Base error carrying a stable machine-readable code."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details: Dict[str, Any] = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        """Return the ``{success: false, error, code, ...}`` response body."""
        payload: Dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        for key, value in self.details.items():
            payload.setdefault(key, value)
        return payload


class GatingError(PKEError):
    """Request is inadmissible: missing course, access, gate, prerequisite, or stage."""

    code = "GATE_B_FAILED"
    status_code = 403


class InvocationInputError(PKEError):
    """Caller supplied unusable parameters."""

    code = "INVALID_INPUT"
    status_code = 400


class NotFoundError(PKEError):
    """A referenced record does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class GenerationError(PKEError):
    """The generation backend failed, timed out, or returned nothing."""

    code = "GENERATION_FAILED"
    status_code = 502


class AcceptanceConflict(PKEError):
    """An accept raced with another write to the same course."""

    code = "ACCEPTANCE_CONFLICT"
    status_code = 409


__all__ = [
    "AcceptanceConflict",
    "GatingError",
    "GenerationError",
    "InvocationInputError",
    "NotFoundError",
    "PKEError",
]
