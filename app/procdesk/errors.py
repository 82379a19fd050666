"""
Error taxonomy for procedure operations.

Every error carries a stable ``code`` and a user-displayable ``message``; the
Flask error handler renders both as JSON with ``status_code``. Internal failure
text (tracebacks, cipher errors) is never put into ``message``.
"""

from __future__ import annotations

from typing import Any, Mapping


class ProcedureError(Exception):
    code = "procedure_error"
    status_code = 400

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        self.message = message
        self.details = dict(details) if details else {}
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(ProcedureError):
    code = "validation_error"
    status_code = 400


class InvalidStateError(ValidationError):
    code = "invalid_state"


class AuthenticationError(ProcedureError):
    code = "unauthenticated"
    status_code = 401


class ForbiddenError(ProcedureError):
    code = "forbidden"
    status_code = 403


class NotFoundError(ProcedureError):
    code = "not_found"
    status_code = 404


class IllegalStateError(ProcedureError):
    code = "illegal_state"
    status_code = 409


class IllegalTransitionError(ProcedureError):
    code = "illegal_transition"
    status_code = 409


class ConflictError(ProcedureError):
    code = "conflict"
    status_code = 409


class IntegrityError(ProcedureError):
    """Ciphertext failed verification, or key material is missing/unusable."""

    code = "integrity_error"
    status_code = 500
