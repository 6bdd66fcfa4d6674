"""
Eligible swap counterparts for an assignment.

A candidate:
    - holds an assignment in the same course (exams: a proctoring task there),
    - is not the requester,
    - is not already party to a pending swap on the same assignment,
    - is an active teaching assistant without approved leave on the
      assignment date.

Unknown assignments and empty candidate sets both yield `[]`. Results are
ordered by ascending user id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from backend.identity_access.domain import Role, parse_role
from backend.identity_access.guard import Identity

from .ports import AssignmentsRepoProtocol, LeaveRepoProtocol, SwapRepoProtocol, UsersRepoProtocol

logger = logging.getLogger("tams.workflow")

PUBLIC_USER_FIELDS = ("id", "full_name", "email")


class EligibilityRepo(AssignmentsRepoProtocol, UsersRepoProtocol, LeaveRepoProtocol, SwapRepoProtocol, Protocol):
    """Repository surface the resolver needs."""


@dataclass
class EligibilityResolver:
    repo: EligibilityRepo

    def _course_and_date(self, assignment_id: int, kind: str) -> Optional[tuple[int, str, Optional[str]]]:
        if kind == "task":
            task = self.repo.get_task(assignment_id)
            if not task:
                return None
            return int(task["course_id"]), str(task["due_date"])[:10], None
        exam = self.repo.get_exam(assignment_id)
        if not exam:
            return None
        return int(exam["course_id"]), str(exam["exam_date"])[:10], "proctoring"

    def eligible_targets(self, assignment_id: int, kind: str, requester: Identity) -> List[dict]:
        located = self._course_and_date(assignment_id, kind)
        if located is None:
            logger.debug("No %s with id %s; no eligible targets", kind, assignment_id)
            return []
        course_id, on_date, task_type = located
        busy = self.repo.pending_swap_party_ids(kind, assignment_id)
        candidates: List[dict] = []
        for uid in sorted(set(self.repo.list_course_assignee_ids(course_id, task_type=task_type))):
            if uid == requester.user_id or uid in busy:
                continue
            user = self.repo.get_user(uid)
            if not user or parse_role(user.get("role")) is not Role.TEACHING_ASSISTANT:
                continue
            if (user.get("status") or "active") != "active":
                continue
            if self.repo.has_approved_leave_on(uid, on_date):
                continue
            candidates.append({k: user.get(k) for k in PUBLIC_USER_FIELDS})
        return candidates


__all__ = ["EligibilityResolver"]
