"""
Error taxonomy for the authorization and request-workflow core.

Why:
    Services raise these; the web adapter maps them to HTTP without knowing
    which service raised them. Each class subclasses the builtin that the rest
    of the code base already uses for the concept (PermissionError,
    ValueError, LookupError), so generic `except ValueError` handlers keep
    working.

Contract:
    `code` is the stable machine-readable error code returned to clients,
    `status_code` the HTTP classification, `reason` a short detail string.
"""

from __future__ import annotations

from typing import Dict, Optional


class WorkflowError(Exception):
    code = "server_error"
    status_code = 500

    def __init__(self, reason: str = "", **extra: object) -> None:
        super().__init__(reason or self.code)
        self.reason = reason or self.code
        self.extra = dict(extra)


class AuthenticationError(WorkflowError):
    code = "unauthenticated"
    status_code = 401


class AuthorizationError(WorkflowError, PermissionError):
    code = "forbidden"
    status_code = 403


class ValidationError(WorkflowError, ValueError):
    code = "bad_request"
    status_code = 400

    def __init__(self, reason: str = "invalid_input", *, fields: Optional[Dict[str, str]] = None, **extra: object) -> None:
        super().__init__(reason, **extra)
        self.fields: Dict[str, str] = dict(fields or {})


class NotFoundError(WorkflowError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(WorkflowError):
    code = "conflict"
    status_code = 409


class PersistenceError(WorkflowError):
    code = "server_error"
    status_code = 500


class NotificationDeliveryError(WorkflowError):
    """Non-fatal; logged by the dispatcher, never surfaced to HTTP callers."""

    code = "notification_failed"
    status_code = 500


__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "ConflictError",
    "NotFoundError",
    "NotificationDeliveryError",
    "PersistenceError",
    "ValidationError",
    "WorkflowError",
]
