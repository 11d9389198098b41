"""Error taxonomy shared by services and the HTTP layer.

Services raise these exceptions; `main.py` renders them with a single
exception handler so every failure carries a stable `kind` and a
human-readable message.
"""

from typing import Optional


class ServiceError(Exception):
    """Base class for failures surfaced to callers."""
    kind = "internal"
    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {"status": "error", "kind": self.kind, "message": self.message}


class AuthenticationError(ServiceError):
    """Missing, expired or invalid credentials."""
    kind = "authentication"
    status_code = 401


class ValidationError(ServiceError, ValueError):
    """Malformed or missing required input; the message names the field."""
    kind = "validation"
    status_code = 400


class AuthorizationError(ServiceError):
    """Caller is authenticated but lacks the role or ownership required."""
    kind = "authorization"
    status_code = 403


class NotFoundError(ServiceError):
    """Referenced document is absent or not owned by the caller."""
    kind = "not_found"
    status_code = 404


class InternalError(ServiceError):
    """Unexpected persistence or computation failure.

    `detail` keeps the original message for operators; it is logged, not
    rendered to clients.
    """
    kind = "internal"
    status_code = 500
