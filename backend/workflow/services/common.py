"""
Shared building blocks for the leave and swap workflows.

State machine (identical for both request kinds):

    pending ──decide──▶ approved | rejected      (terminal)
    pending ──delete──▶ (gone)

Anything attempted on a terminal request is a ConflictError.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from backend.identity_access.domain import Permission
from backend.identity_access.guard import Identity
from backend.workflow.audit import AuditTrail, RequestContext
from backend.workflow.errors import ValidationError, WorkflowError


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED})

# Holding either permission makes a role reviewer-capable (read-all scope).
REVIEW_PERMISSIONS = (Permission.APPROVE_APPLICATION, Permission.REJECT_APPLICATION)

_DECISION_PERMISSION = {
    RequestStatus.APPROVED: Permission.APPROVE_APPLICATION,
    RequestStatus.REJECTED: Permission.REJECT_APPLICATION,
}

MAX_TEXT_LENGTH = 2000


def normalize_decision(value: object) -> RequestStatus:
    raw = value.strip().lower() if isinstance(value, str) else value
    try:
        status = RequestStatus(raw)
    except ValueError:
        raise ValidationError("invalid_status", fields={"status": "must be approved or rejected"}) from None
    if status not in TERMINAL_STATUSES:
        raise ValidationError("invalid_status", fields={"status": "must be approved or rejected"})
    return status


def decision_permission(status: RequestStatus) -> Permission:
    return _DECISION_PERMISSION[status]


def is_reviewer(identity: Identity) -> bool:
    return identity.can(*REVIEW_PERMISSIONS)


def normalize_notes(value: object) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("invalid_reviewer_notes", fields={"reviewer_notes": "must be text"})
    trimmed = value.strip()
    if len(trimmed) > MAX_TEXT_LENGTH:
        raise ValidationError("invalid_reviewer_notes", fields={"reviewer_notes": "too long"})
    return trimmed or None


def require_text(value: object, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("missing_required_fields", fields={field_name: "required"})
    trimmed = value.strip()
    if len(trimmed) > MAX_TEXT_LENGTH:
        raise ValidationError(f"invalid_{field_name}", fields={field_name: "too long"})
    return trimmed


def parse_id(value: object, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"invalid_{field_name}", fields={field_name: "must be an integer id"})
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"invalid_{field_name}", fields={field_name: "must be an integer id"}) from None
    if parsed < 1:
        raise ValidationError(f"invalid_{field_name}", fields={field_name: "must be an integer id"})
    return parsed


@dataclass
class AuditNote:
    """Mutable slot the audited block fills in before the entry is written."""

    entity_id: object = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@contextmanager
def audited(
    audit: AuditTrail,
    *,
    entity: str,
    action: str,
    caller: Identity,
    entity_id: object = None,
    context: Optional[RequestContext] = None,
) -> Iterator[AuditNote]:
    """Write exactly one `<action>_<entity>` entry for the wrapped operation.

    The entry is written whether the block succeeds or raises; `metadata`
    carries `outcome` and, on failure, the error code and reason.
    """
    note = AuditNote(entity_id=entity_id)
    try:
        yield note
    except WorkflowError as exc:
        audit.log_modification(
            entity,
            note.entity_id,
            action,
            caller.user_id,
            f"{action} {entity} failed: {exc.reason}",
            {**note.metadata, "outcome": "failure", "error": exc.code, "reason": exc.reason},
            context,
        )
        raise
    except Exception as exc:
        audit.log_modification(
            entity,
            note.entity_id,
            action,
            caller.user_id,
            f"{action} {entity} failed",
            {**note.metadata, "outcome": "error", "error": type(exc).__name__},
            context,
        )
        raise
    else:
        audit.log_modification(
            entity,
            note.entity_id,
            action,
            caller.user_id,
            note.description or f"{action} {entity}",
            {**note.metadata, "outcome": "success"},
            context,
        )
