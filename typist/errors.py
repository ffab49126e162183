"""Exceptions raised by the control surface and the typing engine.

Each error carries an HTTP-equivalent status and a short machine code so
the control server can map it to a JSON response without a lookup table.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for errors surfaced synchronously to the caller."""

    status = 500
    code = "ENGINE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """Bad profile, out-of-range WPM/duration, empty text, etc."""

    status = 400
    code = "VALIDATION_ERROR"


class InvalidStateError(EngineError):
    """Requested transition is not allowed from the job's current status."""

    status = 400
    code = "INVALID_STATE"


class ForbiddenError(EngineError):
    status = 403
    code = "FORBIDDEN"


class NotFoundError(EngineError):
    status = 404
    code = "NOT_FOUND"


class ConflictError(EngineError):
    """Document already locked, or the owner already has an active job."""

    status = 409
    code = "CONFLICT"


class QuotaExceededError(EngineError):
    status = 429
    code = "QUOTA_EXCEEDED"
