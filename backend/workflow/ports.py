"""
Persistence ports for the request-workflow core.

Why:
    Services depend on these Protocols only; `repo_memory.InMemoryWorkflowRepo`
    and `repo_db.DBWorkflowRepo` implement all of them. Repos return plain
    dicts (dates as `YYYY-MM-DD`, timestamps as ISO-8601 strings) so the web
    adapter stays independent of the storage engine.

Concurrency:
    `*_if_pending` methods are compare-and-set operations. They must change the
    row only while its status is still `pending` and report whether they did.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Set


class UsersRepoProtocol(Protocol):
    def get_user(self, user_id: int) -> Optional[dict]:
        ...

    def list_active_users(self) -> List[dict]:
        ...


class AssignmentsRepoProtocol(Protocol):
    def get_task(self, task_id: int) -> Optional[dict]:
        ...

    def get_exam(self, exam_id: int) -> Optional[dict]:
        ...

    def find_task_assignment(self, task_id: int, user_id: int) -> Optional[dict]:
        ...

    def find_proctoring_assignment(self, user_id: int, course_id: int, on_date: str) -> Optional[dict]:
        ...

    def list_course_assignee_ids(self, course_id: int, *, task_type: Optional[str] = None) -> List[int]:
        ...

    def list_task_conflicts(self, user_id: int, start: date, end: date) -> List[dict]:
        ...

    def list_exam_conflicts(self, user_id: int, start: date, end: date) -> List[dict]:
        ...


class LeaveRepoProtocol(Protocol):
    def create_leave(
        self,
        *,
        user_id: int,
        leave_type: str,
        start_date: date,
        end_date: date,
        duration: int,
        reason: str,
        supporting_document_url: Optional[str],
    ) -> dict:
        ...

    def get_leave(self, leave_id: int) -> Optional[dict]:
        ...

    def list_leaves(self, *, user_id: Optional[int] = None) -> List[dict]:
        ...

    def decide_leave_if_pending(
        self, leave_id: int, *, status: str, reviewer_id: int, reviewer_notes: Optional[str]
    ) -> Optional[dict]:
        ...

    def delete_leave_if_pending(self, leave_id: int) -> bool:
        ...

    def leave_statistics(self, *, user_id: Optional[int] = None) -> dict:
        ...

    def has_approved_leave_on(self, user_id: int, on_date: str) -> bool:
        ...


class SwapRepoProtocol(Protocol):
    def create_swap(
        self,
        *,
        requester_id: int,
        target_id: int,
        assignment_type: str,
        original_assignment_id: int,
        proposed_assignment_id: Optional[int],
        reason: str,
    ) -> Optional[dict]:
        """Insert a pending swap unless either party already has one pending on the
        same assignment; returns None in that case. Check and insert are atomic."""
        ...

    def get_swap(self, swap_id: int) -> Optional[dict]:
        ...

    def list_swaps(self, *, involving_user_id: Optional[int] = None) -> List[dict]:
        ...

    def decide_swap_if_pending(
        self,
        swap_id: int,
        *,
        status: str,
        reviewer_id: int,
        reviewer_notes: Optional[str],
        reassignments: Iterable[tuple[int, int, int]] = (),
    ) -> Optional[dict]:
        """Set the decision and apply `(task_assignment_id, expected_user_id, new_user_id)`
        moves atomically. Returns None, changing nothing, when the swap is no longer
        pending or a row is no longer held by its expected user."""
        ...

    def delete_swap_if_pending(self, swap_id: int) -> bool:
        ...

    def swap_statistics(self, *, involving_user_id: Optional[int] = None) -> dict:
        ...

    def pending_swap_party_ids(self, assignment_type: str, original_assignment_id: int) -> Set[int]:
        ...


class AuditRepoProtocol(Protocol):
    def append_audit(self, entry: Mapping[str, Any]) -> dict:
        ...

    def search_audit(
        self,
        filters: Mapping[str, Any],
        *,
        limit: int,
        offset: int,
        newest_first: bool = True,
    ) -> List[dict]:
        ...

    def audit_counts(self) -> Dict[str, Any]:
        ...


class NotificationRepoProtocol(Protocol):
    def create_notification(
        self,
        *,
        user_id: int,
        type: str,
        title: str,
        message: str,
        link: Optional[str],
        data: Optional[Mapping[str, Any]],
    ) -> dict:
        ...

    def get_notification(self, notification_id: int) -> Optional[dict]:
        ...

    def list_notifications(self, user_id: int, *, unread_only: bool, limit: int) -> List[dict]:
        ...

    def unread_notification_count(self, user_id: int) -> int:
        ...

    def mark_notification_read(self, notification_id: int, user_id: int) -> bool:
        ...

    def mark_all_notifications_read(self, user_id: int) -> int:
        ...

    def delete_notification(self, notification_id: int, user_id: int) -> bool:
        ...

    def delete_all_notifications(self, user_id: int) -> int:
        ...


class WorkflowRepoProtocol(
    UsersRepoProtocol,
    AssignmentsRepoProtocol,
    LeaveRepoProtocol,
    SwapRepoProtocol,
    AuditRepoProtocol,
    NotificationRepoProtocol,
    Protocol,
):
    """Everything the web wiring needs from one storage backend."""
