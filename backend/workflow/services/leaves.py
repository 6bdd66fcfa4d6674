"""
Leave request workflow (create → decide → terminal, or delete while pending).

Why:
    Keeps the leave rules (types, date range, reviewer eligibility, exactly-once
    decisions) out of the web adapter so they can be unit-tested against the
    in-memory repository.

Behavior:
    - Every create/decide/delete writes exactly one `<action>_leave_request`
      audit entry, also when it fails.
    - Decisions are compare-and-set at the repository (`decide_leave_if_pending`);
      the loser of a race gets ConflictError.
    - The requester is notified after a successful decision. Notification
      problems are logged and never undo the decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, List, Optional, Protocol

from backend.identity_access.domain import Permission, Role
from backend.identity_access.guard import Identity
from backend.workflow.audit import AuditTrail, RequestContext
from backend.workflow.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from backend.workflow.notifications import NotificationDispatcher
from backend.workflow.ports import AssignmentsRepoProtocol, LeaveRepoProtocol

from .common import (
    RequestStatus,
    audited,
    decision_permission,
    is_reviewer,
    normalize_decision,
    normalize_notes,
    parse_id,
    require_text,
)

logger = logging.getLogger("tams.workflow")

ENTITY = "leave_request"

LEAVE_TYPES = ("conference", "medical", "family_emergency", "personal", "other")


class LeaveRepo(LeaveRepoProtocol, AssignmentsRepoProtocol, Protocol):
    """Repository surface the leave workflow needs."""


def _parse_date(value: object, field_name: str) -> date:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("missing_required_fields", fields={field_name: "required"})
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise ValidationError("invalid_date_format", fields={field_name: "expected YYYY-MM-DD"}) from None


def _normalize_leave_type(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("missing_required_fields", fields={"leave_type": "required"})
    leave_type = value.strip().lower()
    if leave_type not in LEAVE_TYPES:
        raise ValidationError("invalid_leave_type", fields={"leave_type": f"one of {', '.join(LEAVE_TYPES)}"})
    return leave_type


def _normalize_document_url(value: object) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("invalid_supporting_document_url", fields={"supporting_document_url": "must be text"})
    return value.strip() or None


def leave_duration(start: date, end: date) -> int:
    """Inclusive day count of a leave."""
    return (end - start).days + 1


@dataclass
class LeaveWorkflow:
    """Use cases for leave requests (framework-independent)."""

    repo: LeaveRepo
    audit: AuditTrail
    notifier: NotificationDispatcher
    today: Callable[[], date] = date.today
    allow_backdated: bool = True

    # --- transitions --------------------------------------------------------

    def create(
        self,
        requester: Identity,
        *,
        leave_type: object,
        start_date: object,
        end_date: object,
        reason: object,
        supporting_document_url: object = None,
        context: Optional[RequestContext] = None,
    ) -> dict:
        with audited(self.audit, entity=ENTITY, action="create", caller=requester, context=context) as note:
            kind = _normalize_leave_type(leave_type)
            start = _parse_date(start_date, "start_date")
            end = _parse_date(end_date, "end_date")
            text = require_text(reason, "reason")
            doc_url = _normalize_document_url(supporting_document_url)
            if start > end:
                raise ValidationError("invalid_date_range", fields={"start_date": "must not be after end_date"})
            if start < self.today() and not self.allow_backdated and requester.role is not Role.ADMIN:
                raise ValidationError("past_dates_not_allowed", fields={"start_date": "must not be in the past"})
            leave = self.repo.create_leave(
                user_id=requester.user_id,
                leave_type=kind,
                start_date=start,
                end_date=end,
                duration=leave_duration(start, end),
                reason=text,
                supporting_document_url=doc_url,
            )
            note.entity_id = leave["id"]
            note.description = f"Created {kind} leave request {start.isoformat()}..{end.isoformat()}"
            note.metadata = {"leave_type": kind, "duration": leave["duration"]}
            return leave

    def decide(
        self,
        leave_id: object,
        reviewer: Identity,
        decision: object,
        notes: object = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> dict:
        with audited(
            self.audit, entity=ENTITY, action="update_status", caller=reviewer, entity_id=leave_id, context=context
        ) as note:
            status = normalize_decision(decision)
            note.metadata = {"status": status.value}
            if not reviewer.can(decision_permission(status)):
                raise AuthorizationError("not_a_reviewer")
            lid = parse_id(leave_id, "leave_id")
            reviewer_notes = normalize_notes(notes)
            current = self.repo.get_leave(lid)
            if not current:
                raise NotFoundError("leave_not_found")
            if current["status"] != RequestStatus.PENDING.value:
                raise ConflictError("leave_not_pending", status=current["status"])
            updated = self.repo.decide_leave_if_pending(
                lid, status=status.value, reviewer_id=reviewer.user_id, reviewer_notes=reviewer_notes
            )
            if updated is None:
                raise ConflictError("leave_not_pending")
            note.description = f"Leave request {lid} {status.value}"
        self.notifier.send_leave_status_update(int(updated["user_id"]), updated)
        return updated

    def delete(self, leave_id: object, caller: Identity, *, context: Optional[RequestContext] = None) -> None:
        with audited(
            self.audit, entity=ENTITY, action="delete", caller=caller, entity_id=leave_id, context=context
        ) as note:
            lid = parse_id(leave_id, "leave_id")
            current = self.repo.get_leave(lid)
            if not current:
                raise NotFoundError("leave_not_found")
            if int(current["user_id"]) != caller.user_id and not caller.can(Permission.DELETE_APPLICATION):
                raise AuthorizationError("not_leave_owner")
            if current["status"] != RequestStatus.PENDING.value:
                raise ConflictError("leave_not_pending", status=current["status"])
            if not self.repo.delete_leave_if_pending(lid):
                raise ConflictError("leave_not_pending")
            note.description = f"Deleted leave request {lid}"

    # --- reads --------------------------------------------------------------

    def list_for(self, caller: Identity) -> List[dict]:
        if is_reviewer(caller):
            return self.repo.list_leaves()
        return self.repo.list_leaves(user_id=caller.user_id)

    def list_mine(self, caller: Identity) -> List[dict]:
        return self.repo.list_leaves(user_id=caller.user_id)

    def get(self, leave_id: object, caller: Identity) -> dict:
        lid = parse_id(leave_id, "leave_id")
        leave = self.repo.get_leave(lid)
        if not leave:
            raise NotFoundError("leave_not_found")
        if int(leave["user_id"]) != caller.user_id and not is_reviewer(caller):
            raise AuthorizationError("not_leave_owner")
        return leave

    def statistics(self, caller: Identity) -> dict:
        if is_reviewer(caller):
            return self.repo.leave_statistics()
        return self.repo.leave_statistics(user_id=caller.user_id)

    def conflicts_for(self, leave: dict) -> Optional[dict]:
        """Assignments of the requester that fall inside the leave, or None."""
        start = _parse_date(leave["start_date"], "start_date")
        end = _parse_date(leave["end_date"], "end_date")
        user_id = int(leave["user_id"])
        tasks = self.repo.list_task_conflicts(user_id, start, end)
        exams = self.repo.list_exam_conflicts(user_id, start, end)
        if not tasks and not exams:
            return None
        logger.info("Leave %s overlaps %d task(s) and %d exam(s)", leave["id"], len(tasks), len(exams))
        return {
            "message": "Warning: You have assignments during the requested leave period",
            "taskConflicts": tasks,
            "examConflicts": exams,
        }


__all__ = ["LEAVE_TYPES", "LeaveWorkflow", "leave_duration"]
