"""
Portal error taxonomy.

Services raise these; the API layer renders them as
``{"kind": ..., "message": ..., "errors": {...}}`` with the matching HTTP
status, so callers can branch on ``kind`` without parsing message text.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION_FAILED = "validation_failed"
    INTERNAL = "internal"


_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.INTERNAL: 500,
}


class PortalError(Exception):
    """Base exception with structured error info."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        self.message = message
        self.errors = errors or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.kind]

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.errors:
            result["errors"] = self.errors
        return result


class UnauthenticatedError(PortalError):
    kind = ErrorKind.UNAUTHENTICATED

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class ForbiddenError(PortalError):
    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class NotFoundError(PortalError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class ConflictError(PortalError):
    kind = ErrorKind.CONFLICT


class ValidationFailedError(PortalError):
    """Malformed payload. ``errors`` maps field name to message."""

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str = "Invalid data", errors: dict[str, str] | None = None):
        super().__init__(message, errors)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationFailedError":
        return cls(message, {field: message})


class InternalError(PortalError):
    kind = ErrorKind.INTERNAL
