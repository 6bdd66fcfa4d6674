"""
Swap request workflow: a TA hands an assignment (task or exam proctoring) to a
colleague, optionally taking one of theirs in return.

Why:
    Swaps move real work between people, so creation checks that both sides
    actually hold what they offer, and approval moves the task assignments in
    the same repository transaction as the status change.

Permissions:
    Who may decide is a named policy (`SwapReviewPolicy`):
    - `target_or_reviewer`: the target, or any role holding the decision
      permission (approve/reject application).
    - `target_only`: only the target named in the request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from backend.identity_access.domain import Permission
from backend.identity_access.guard import Identity
from backend.workflow.audit import AuditTrail, RequestContext
from backend.workflow.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from backend.workflow.notifications import NotificationDispatcher
from backend.workflow.ports import AssignmentsRepoProtocol, SwapRepoProtocol, UsersRepoProtocol

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

ENTITY = "swap_request"

ASSIGNMENT_KINDS = ("task", "exam")


class SwapReviewPolicy(str, Enum):
    TARGET_OR_REVIEWER = "target_or_reviewer"
    TARGET_ONLY = "target_only"


class SwapRepo(SwapRepoProtocol, AssignmentsRepoProtocol, UsersRepoProtocol, Protocol):
    """Repository surface the swap workflow needs."""


def normalize_assignment_kind(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("missing_required_fields", fields={"assignment_type": "required"})
    kind = value.strip().lower()
    if kind not in ASSIGNMENT_KINDS:
        raise ValidationError("invalid_assignment_type", fields={"assignment_type": "must be task or exam"})
    return kind


def parse_review_policy(value: object) -> SwapReviewPolicy:
    if value is None or value == "":
        return SwapReviewPolicy.TARGET_OR_REVIEWER
    try:
        return SwapReviewPolicy(str(value).strip().lower())
    except ValueError:
        raise ValueError("invalid_swap_review_policy") from None


@dataclass
class SwapWorkflow:
    """Use cases for swap requests (framework-independent)."""

    repo: SwapRepo
    audit: AuditTrail
    notifier: NotificationDispatcher
    policy: SwapReviewPolicy = SwapReviewPolicy.TARGET_OR_REVIEWER

    # --- holdings -----------------------------------------------------------

    def held_assignment(self, kind: str, assignment_id: int, user_id: int) -> Optional[dict]:
        """The task assignment row through which `user_id` holds the assignment.

        Tasks are held directly. An exam is held through a proctoring task in
        the exam's course due on the exam date. Raises ValidationError when the
        task or exam does not exist.
        """
        if kind == "task":
            if not self.repo.get_task(assignment_id):
                raise ValidationError("task_not_found", fields={"assignment_id": "unknown task"})
            return self.repo.find_task_assignment(assignment_id, user_id)
        exam = self.repo.get_exam(assignment_id)
        if not exam:
            raise ValidationError("exam_not_found", fields={"assignment_id": "unknown exam"})
        return self.repo.find_proctoring_assignment(user_id, int(exam["course_id"]), str(exam["exam_date"])[:10])

    def _may_decide(self, swap: dict, reviewer: Identity, status: RequestStatus) -> bool:
        if int(swap["target_id"]) == reviewer.user_id:
            return True
        if self.policy is SwapReviewPolicy.TARGET_ONLY:
            return False
        return reviewer.can(decision_permission(status))

    def _reassignments(self, swap: dict) -> List[tuple[int, int, int]]:
        """`(task_assignment_id, current_holder, new_holder)` moves for an approval."""
        kind = swap["assignment_type"]
        requester_id = int(swap["requester_id"])
        target_id = int(swap["target_id"])
        given = self.held_assignment(kind, int(swap["original_assignment_id"]), requester_id)
        if not given:
            raise ConflictError("assignment_no_longer_held", party="requester")
        moves = [(int(given["id"]), requester_id, target_id)]
        if swap.get("proposed_assignment_id"):
            taken = self.held_assignment(kind, int(swap["proposed_assignment_id"]), target_id)
            if not taken:
                raise ConflictError("assignment_no_longer_held", party="target")
            moves.append((int(taken["id"]), target_id, requester_id))
        return moves

    # --- transitions --------------------------------------------------------

    def create(
        self,
        requester: Identity,
        *,
        target_id: object,
        assignment_type: object,
        original_assignment_id: object,
        reason: object,
        proposed_assignment_id: object = None,
        context: Optional[RequestContext] = None,
    ) -> dict:
        with audited(self.audit, entity=ENTITY, action="create", caller=requester, context=context) as note:
            if target_id in (None, "") or original_assignment_id in (None, ""):
                missing = {}
                if target_id in (None, ""):
                    missing["target_id"] = "required"
                if original_assignment_id in (None, ""):
                    missing["original_assignment_id"] = "required"
                raise ValidationError("missing_required_fields", fields=missing)
            kind = normalize_assignment_kind(assignment_type)
            target = parse_id(target_id, "target_id")
            original = parse_id(original_assignment_id, "original_assignment_id")
            proposed = None
            if proposed_assignment_id not in (None, ""):
                proposed = parse_id(proposed_assignment_id, "proposed_assignment_id")
            text = require_text(reason, "reason")
            note.metadata = {"assignment_type": kind, "original_assignment_id": original, "target_id": target}
            if target == requester.user_id:
                raise ValidationError("self_swap", fields={"target_id": "cannot swap with yourself"})
            if not self.repo.get_user(target):
                raise ValidationError("target_not_found", fields={"target_id": "unknown user"})
            if not self.held_assignment(kind, original, requester.user_id):
                raise ValidationError("requester_not_assigned", fields={"original_assignment_id": "not assigned to you"})
            if proposed is not None and not self.held_assignment(kind, proposed, target):
                raise ValidationError(
                    "target_not_assigned", fields={"proposed_assignment_id": "not assigned to the target"}
                )
            swap = self.repo.create_swap(
                requester_id=requester.user_id,
                target_id=target,
                assignment_type=kind,
                original_assignment_id=original,
                proposed_assignment_id=proposed,
                reason=text,
            )
            if swap is None:
                raise ConflictError("swap_already_pending")
            note.entity_id = swap["id"]
            note.description = f"Requested {kind} swap with user {target}"
        self.notifier.send_swap_request(target, swap)
        return swap

    def decide(
        self,
        swap_id: object,
        reviewer: Identity,
        decision: object,
        notes: object = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> dict:
        with audited(
            self.audit, entity=ENTITY, action="update_status", caller=reviewer, entity_id=swap_id, context=context
        ) as note:
            status = normalize_decision(decision)
            note.metadata = {"status": status.value, "policy": self.policy.value}
            sid = parse_id(swap_id, "swap_id")
            reviewer_notes = normalize_notes(notes)
            current = self.repo.get_swap(sid)
            if not current:
                raise NotFoundError("swap_not_found")
            if not self._may_decide(current, reviewer, status):
                raise AuthorizationError("not_swap_reviewer")
            if current["status"] != RequestStatus.PENDING.value:
                raise ConflictError("swap_not_pending", status=current["status"])
            moves = self._reassignments(current) if status is RequestStatus.APPROVED else []
            updated = self.repo.decide_swap_if_pending(
                sid,
                status=status.value,
                reviewer_id=reviewer.user_id,
                reviewer_notes=reviewer_notes,
                reassignments=moves,
            )
            if updated is None:
                latest = self.repo.get_swap(sid)
                if latest and latest["status"] == RequestStatus.PENDING.value:
                    raise ConflictError("assignment_no_longer_held")
                raise ConflictError("swap_not_pending")
            note.metadata["reassigned"] = len(moves)
            note.description = f"Swap request {sid} {status.value}"
        if moves:
            logger.info("Swap %s moved %d assignment(s)", sid, len(moves))
        for party in (int(updated["requester_id"]), int(updated["target_id"])):
            self.notifier.send_swap_status_update(party, updated)
        return updated

    def delete(self, swap_id: object, caller: Identity, *, context: Optional[RequestContext] = None) -> None:
        with audited(
            self.audit, entity=ENTITY, action="delete", caller=caller, entity_id=swap_id, context=context
        ) as note:
            sid = parse_id(swap_id, "swap_id")
            current = self.repo.get_swap(sid)
            if not current:
                raise NotFoundError("swap_not_found")
            if int(current["requester_id"]) != caller.user_id and not caller.can(Permission.DELETE_APPLICATION):
                raise AuthorizationError("not_swap_owner")
            if current["status"] != RequestStatus.PENDING.value:
                raise ConflictError("swap_not_pending", status=current["status"])
            if not self.repo.delete_swap_if_pending(sid):
                raise ConflictError("swap_not_pending")
            note.description = f"Deleted swap request {sid}"

    # --- reads --------------------------------------------------------------

    def list_for(self, caller: Identity) -> List[dict]:
        if is_reviewer(caller):
            return self.repo.list_swaps()
        return self.repo.list_swaps(involving_user_id=caller.user_id)

    def list_mine(self, caller: Identity) -> List[dict]:
        return self.repo.list_swaps(involving_user_id=caller.user_id)

    def get(self, swap_id: object, caller: Identity) -> dict:
        sid = parse_id(swap_id, "swap_id")
        swap = self.repo.get_swap(sid)
        if not swap:
            raise NotFoundError("swap_not_found")
        party = caller.user_id in (int(swap["requester_id"]), int(swap["target_id"]))
        if not party and not is_reviewer(caller):
            raise AuthorizationError("not_swap_party")
        return swap

    def statistics(self, caller: Identity) -> dict:
        if is_reviewer(caller):
            return self.repo.swap_statistics()
        return self.repo.swap_statistics(involving_user_id=caller.user_id)


__all__ = [
    "ASSIGNMENT_KINDS",
    "SwapReviewPolicy",
    "SwapWorkflow",
    "normalize_assignment_kind",
    "parse_review_policy",
]
