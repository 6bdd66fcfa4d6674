"""
Notification dispatcher: persisted, per-user notices for workflow events.

Why:
    Requesters and swap counterparts must learn about decisions without
    polling the request lists. Each recipient gets its own row; the recipient
    alone may read or delete it afterwards.

Delivery:
    Multi-recipient sends are best effort. A failure for one recipient is
    logged (NotificationDeliveryError) and does not stop the others; callers
    receive the number of notifications actually created.

Message texts are deterministic functions of the triggering entity so tests
and clients can rely on them.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from backend.identity_access.domain import parse_role

from .errors import AuthorizationError, NotFoundError, NotificationDeliveryError, ValidationError
from .ports import NotificationRepoProtocol, UsersRepoProtocol

logger = logging.getLogger("tams.notifications")

_DAY_SECONDS = 60 * 60 * 24


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def capitalize_status(status: str) -> str:
    return status[:1].upper() + status[1:]


def format_short_date(value: object) -> str:
    """Format a date as M/D/YYYY (no zero padding)."""
    if isinstance(value, datetime):
        d = value.date()
    elif isinstance(value, date):
        d = value
    else:
        d = date.fromisoformat(str(value)[:10])
    return f"{d.month}/{d.day}/{d.year}"


def days_remaining(due: object, now: datetime) -> int:
    """Whole days until `due`, rounded up (negative when overdue)."""
    if isinstance(due, datetime):
        due_dt = due
    elif isinstance(due, date):
        due_dt = datetime(due.year, due.month, due.day)
    else:
        due_dt = datetime.fromisoformat(str(due))
    if due_dt.tzinfo is None:
        due_dt = due_dt.replace(tzinfo=timezone.utc)
    return math.ceil((due_dt - now).total_seconds() / _DAY_SECONDS)


def task_reminder_message(title: str, remaining: int) -> str:
    if remaining <= 0:
        return f'Task "{title}" is due today!'
    if remaining == 1:
        return f'Task "{title}" is due tomorrow!'
    return f'Task "{title}" is due in {remaining} days.'


class NotificationDispatcher:
    def __init__(
        self,
        repo: NotificationRepoProtocol,
        users: UsersRepoProtocol,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repo
        self._users = users
        self._clock = clock

    # --- core sends ---------------------------------------------------------

    def send_to_user(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> dict:
        if not user_id or not type or not title or not message:
            raise ValidationError("missing_notification_fields")
        try:
            return self._repo.create_notification(
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                link=link,
                data=dict(data) if data else None,
            )
        except ValidationError:
            raise
        except Exception as exc:
            raise NotificationDeliveryError(f"delivery_failed:{user_id}") from exc

    def send_to_users(
        self,
        user_ids: Iterable[int],
        type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> int:
        if not type or not title or not message:
            raise ValidationError("missing_notification_fields")
        delivered = 0
        for uid in dict.fromkeys(user_ids):
            try:
                self.send_to_user(uid, type, title, message, link, data)
            except (NotificationDeliveryError, ValidationError) as exc:
                logger.warning("Notification to user %s failed: %s", uid, exc)
                continue
            delivered += 1
        return delivered

    def _holders_of(self, role: object) -> List[dict]:
        # Stored roles may still use legacy aliases (`ta`, `staff`).
        wanted = parse_role(role)
        if wanted is None:
            return []
        return [u for u in self._users.list_active_users() if parse_role(u.get("role")) is wanted]

    def send_to_role(
        self,
        role: str,
        type: str,
        title: str,
        message: str,
        link: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> int:
        ids = [int(u["id"]) for u in self._holders_of(role)]
        return self.send_to_users(ids, type, title, message, link, data)

    def try_send(self, user_id: int, type: str, title: str, message: str, link: Optional[str] = None, data: Optional[Mapping[str, Any]] = None) -> Optional[dict]:
        """Send and log failures instead of raising (used after workflow transitions)."""
        try:
            return self.send_to_user(user_id, type, title, message, link, data)
        except (NotificationDeliveryError, ValidationError) as exc:
            logger.warning("Notification %s to user %s not delivered: %s", type, user_id, exc)
            return None

    # --- workflow helpers ---------------------------------------------------

    def send_task_assignment(self, user_id: int, task: Mapping[str, Any]) -> dict:
        return self.send_to_user(
            user_id,
            "task_assignment",
            "New Task Assignment",
            f"You have been assigned a new {task['task_type']} task: {task['title']}",
            f"/tasks/{task['id']}",
            {"task_id": task["id"], "task_type": task["task_type"], "due_date": task.get("due_date")},
        )

    def send_task_reminder(self, user_id: int, task: Mapping[str, Any]) -> dict:
        remaining = days_remaining(task["due_date"], self._clock())
        return self.send_to_user(
            user_id,
            "task_reminder",
            "Task Reminder",
            task_reminder_message(task["title"], remaining),
            f"/tasks/{task['id']}",
            {
                "task_id": task["id"],
                "task_type": task.get("task_type"),
                "due_date": task["due_date"],
                "days_remaining": remaining,
            },
        )

    def send_leave_status_update(self, user_id: int, leave: Mapping[str, Any]) -> Optional[dict]:
        status = str(leave["status"])
        return self.try_send(
            user_id,
            "leave_status",
            f"Leave Request {capitalize_status(status)}",
            f"Your leave request from {format_short_date(leave['start_date'])} "
            f"to {format_short_date(leave['end_date'])} has been {status}.",
            f"/leaves/{leave['id']}",
            {"leave_id": leave["id"], "status": status, "reviewer_notes": leave.get("reviewer_notes")},
        )

    def send_swap_request(self, user_id: int, swap: Mapping[str, Any]) -> Optional[dict]:
        kind = "task" if swap["assignment_type"] == "task" else "exam"
        return self.try_send(
            user_id,
            "swap_request",
            "New Swap Request",
            f"{swap.get('requester_name') or 'A teaching assistant'} has requested to swap {kind} with you.",
            f"/swaps/{swap['id']}",
            {"swap_id": swap["id"], "requester_id": swap["requester_id"], "assignment_type": swap["assignment_type"]},
        )

    def send_swap_status_update(self, user_id: int, swap: Mapping[str, Any]) -> Optional[dict]:
        status = str(swap["status"])
        if user_id == swap.get("requester_id"):
            message = f"Your swap request with {swap.get('target_name') or 'your colleague'} has been {status}."
        else:
            message = f"The swap request from {swap.get('requester_name') or 'your colleague'} has been {status}."
        return self.try_send(
            user_id,
            "swap_status",
            f"Swap Request {capitalize_status(status)}",
            message,
            f"/swaps/{swap['id']}",
            {"swap_id": swap["id"], "status": status, "reviewer_notes": swap.get("reviewer_notes")},
        )

    def send_course_assignment(self, user_id: int, course: Mapping[str, Any], assignment: Mapping[str, Any]) -> dict:
        return self.send_to_user(
            user_id,
            "course_assignment",
            "New Course Assignment",
            f"You have been assigned as a TA for {course['course_code']}: {course['course_name']}.",
            f"/courses/{course['id']}",
            {
                "course_id": course["id"],
                "course_code": course["course_code"],
                "hours_per_week": assignment.get("hours_per_week"),
                "start_date": assignment.get("start_date"),
                "end_date": assignment.get("end_date"),
            },
        )

    def send_system_announcement(
        self,
        title: str,
        message: str,
        link: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
    ) -> int:
        ids: List[int] = []
        if roles:
            for role in roles:
                ids.extend(int(u["id"]) for u in self._holders_of(role))
        else:
            ids = [int(u["id"]) for u in self._users.list_active_users()]
        return self.send_to_users(
            ids,
            "system_announcement",
            title,
            message,
            link,
            {"announcement_date": self._clock().isoformat()},
        )

    # --- recipient operations -----------------------------------------------

    def list_for(self, user_id: int, *, unread_only: bool = False, limit: int = 50) -> dict:
        limit = max(1, min(int(limit or 50), 200))
        items = self._repo.list_notifications(user_id, unread_only=unread_only, limit=limit)
        return {"notifications": items, "unreadCount": self._repo.unread_notification_count(user_id)}

    def unread_count(self, user_id: int) -> int:
        return self._repo.unread_notification_count(user_id)

    def _owned(self, notification_id: int, user_id: int) -> dict:
        item = self._repo.get_notification(notification_id)
        if not item:
            raise NotFoundError("notification_not_found")
        if int(item["user_id"]) != int(user_id):
            raise AuthorizationError("not_notification_owner")
        return item

    def mark_read(self, notification_id: int, user_id: int) -> None:
        self._owned(notification_id, user_id)
        self._repo.mark_notification_read(notification_id, user_id)

    def mark_all_read(self, user_id: int) -> int:
        return self._repo.mark_all_notifications_read(user_id)

    def delete(self, notification_id: int, user_id: int) -> None:
        self._owned(notification_id, user_id)
        if not self._repo.delete_notification(notification_id, user_id):
            raise NotFoundError("notification_not_found")

    def delete_all(self, user_id: int) -> int:
        return self._repo.delete_all_notifications(user_id)


__all__ = [
    "NotificationDispatcher",
    "capitalize_status",
    "days_remaining",
    "format_short_date",
    "task_reminder_message",
]
