"""
In-memory persistence for the workflow core (tests and offline development).

Why:
    Mirrors `DBWorkflowRepo` semantics closely enough that service and API
    tests exercise the same rules without Postgres: conditional updates only
    touch pending rows, approvals move task assignments together with the
    status change, and every read returns a copy.

Notes:
    One re-entrant lock guards all state, which makes each method atomic the
    way a single SQL statement or transaction would be.
"""

from __future__ import annotations

import itertools
import threading
from collections import Counter
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_date(value: object) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)[:10]


class InMemoryWorkflowRepo:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.users: Dict[int, dict] = {}
        self.tasks: Dict[int, dict] = {}
        self.task_assignments: Dict[int, dict] = {}
        self.exams: Dict[int, dict] = {}
        self.leaves: Dict[int, dict] = {}
        self.swaps: Dict[int, dict] = {}
        self.audit_entries: List[dict] = []
        self.notifications: Dict[int, dict] = {}

    def _next_id(self) -> int:
        return next(self._ids)

    # --- seed helpers -------------------------------------------------------

    def add_user(
        self,
        user_id: int,
        full_name: str,
        role: str = "teaching_assistant",
        *,
        email: Optional[str] = None,
        status: str = "active",
    ) -> dict:
        with self._lock:
            user = {
                "id": user_id,
                "full_name": full_name,
                "email": email or f"user{user_id}@example.edu",
                "role": role,
                "status": status,
            }
            self.users[user_id] = user
            return dict(user)

    def add_task(
        self,
        course_id: int,
        title: str,
        *,
        task_type: str = "grading",
        due_date: object = "2025-06-15",
        status: str = "active",
    ) -> dict:
        with self._lock:
            tid = self._next_id()
            task = {
                "id": tid,
                "course_id": course_id,
                "title": title,
                "task_type": task_type,
                "due_date": _iso_date(due_date),
                "status": status,
            }
            self.tasks[tid] = task
            return dict(task)

    def assign_task(self, task_id: int, user_id: int) -> dict:
        with self._lock:
            aid = self._next_id()
            row = {"id": aid, "task_id": task_id, "user_id": user_id}
            self.task_assignments[aid] = row
            return dict(row)

    def add_exam(self, course_id: int, exam_name: str, exam_date: object) -> dict:
        with self._lock:
            eid = self._next_id()
            exam = {"id": eid, "course_id": course_id, "exam_name": exam_name, "exam_date": _iso_date(exam_date)}
            self.exams[eid] = exam
            return dict(exam)

    # --- users --------------------------------------------------------------

    def get_user(self, user_id: int) -> Optional[dict]:
        with self._lock:
            user = self.users.get(int(user_id))
            return dict(user) if user else None

    def list_active_users(self) -> List[dict]:
        with self._lock:
            return [dict(u) for _, u in sorted(self.users.items()) if u["status"] == "active"]

    def _name(self, user_id: object) -> Optional[str]:
        user = self.users.get(int(user_id)) if user_id is not None else None
        return user["full_name"] if user else None

    # --- tasks / exams ------------------------------------------------------

    def get_task(self, task_id: int) -> Optional[dict]:
        with self._lock:
            task = self.tasks.get(int(task_id))
            return dict(task) if task else None

    def get_exam(self, exam_id: int) -> Optional[dict]:
        with self._lock:
            exam = self.exams.get(int(exam_id))
            return dict(exam) if exam else None

    def find_task_assignment(self, task_id: int, user_id: int) -> Optional[dict]:
        with self._lock:
            for row in sorted(self.task_assignments.values(), key=lambda r: r["id"]):
                if row["task_id"] == int(task_id) and row["user_id"] == int(user_id):
                    return dict(row)
            return None

    def find_proctoring_assignment(self, user_id: int, course_id: int, on_date: str) -> Optional[dict]:
        with self._lock:
            for row in sorted(self.task_assignments.values(), key=lambda r: r["id"]):
                task = self.tasks.get(row["task_id"])
                if (
                    task
                    and row["user_id"] == int(user_id)
                    and task["task_type"] == "proctoring"
                    and task["course_id"] == int(course_id)
                    and task["due_date"] == _iso_date(on_date)
                ):
                    return dict(row)
            return None

    def list_course_assignee_ids(self, course_id: int, *, task_type: Optional[str] = None) -> List[int]:
        with self._lock:
            ids: Set[int] = set()
            for row in self.task_assignments.values():
                task = self.tasks.get(row["task_id"])
                if not task or task["course_id"] != int(course_id):
                    continue
                if task_type is not None and task["task_type"] != task_type:
                    continue
                ids.add(row["user_id"])
            return sorted(ids)

    def list_task_conflicts(self, user_id: int, start: date, end: date) -> List[dict]:
        lo, hi = _iso_date(start), _iso_date(end)
        with self._lock:
            out = []
            for row in self.task_assignments.values():
                task = self.tasks.get(row["task_id"])
                if row["user_id"] != int(user_id) or not task or task["status"] != "active":
                    continue
                if lo <= task["due_date"] <= hi:
                    out.append(
                        {k: task[k] for k in ("id", "title", "task_type", "due_date", "course_id")}
                    )
            return sorted(out, key=lambda t: (t["due_date"], t["id"]))

    def list_exam_conflicts(self, user_id: int, start: date, end: date) -> List[dict]:
        lo, hi = _iso_date(start), _iso_date(end)
        with self._lock:
            courses = set()
            for row in self.task_assignments.values():
                task = self.tasks.get(row["task_id"])
                if row["user_id"] == int(user_id) and task and task["task_type"] == "proctoring":
                    courses.add(task["course_id"])
            out = [
                {"id": e["id"], "title": e["exam_name"], "course_id": e["course_id"], "due_date": e["exam_date"]}
                for e in self.exams.values()
                if e["course_id"] in courses and lo <= e["exam_date"] <= hi
            ]
            return sorted(out, key=lambda e: (e["due_date"], e["id"]))

    # --- leave requests -----------------------------------------------------

    def _leave_view(self, row: dict) -> dict:
        view = dict(row)
        view["user_name"] = self._name(row["user_id"])
        view["reviewer_name"] = self._name(row["reviewer_id"])
        return view

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
        with self._lock:
            lid = self._next_id()
            row = {
                "id": lid,
                "user_id": user_id,
                "leave_type": leave_type,
                "start_date": _iso_date(start_date),
                "end_date": _iso_date(end_date),
                "duration": duration,
                "reason": reason,
                "supporting_document_url": supporting_document_url,
                "status": "pending",
                "reviewer_id": None,
                "reviewer_notes": None,
                "created_at": _now_iso(),
                "reviewed_at": None,
            }
            self.leaves[lid] = row
            return self._leave_view(row)

    def get_leave(self, leave_id: int) -> Optional[dict]:
        with self._lock:
            row = self.leaves.get(int(leave_id))
            return self._leave_view(row) if row else None

    def list_leaves(self, *, user_id: Optional[int] = None) -> List[dict]:
        with self._lock:
            rows = [r for r in self.leaves.values() if user_id is None or r["user_id"] == int(user_id)]
            rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
            return [self._leave_view(r) for r in rows]

    def decide_leave_if_pending(
        self, leave_id: int, *, status: str, reviewer_id: int, reviewer_notes: Optional[str]
    ) -> Optional[dict]:
        with self._lock:
            row = self.leaves.get(int(leave_id))
            if not row or row["status"] != "pending":
                return None
            row.update(
                status=status,
                reviewer_id=reviewer_id,
                reviewer_notes=reviewer_notes,
                reviewed_at=_now_iso(),
            )
            return self._leave_view(row)

    def delete_leave_if_pending(self, leave_id: int) -> bool:
        with self._lock:
            row = self.leaves.get(int(leave_id))
            if not row or row["status"] != "pending":
                return False
            del self.leaves[int(leave_id)]
            return True

    def leave_statistics(self, *, user_id: Optional[int] = None) -> dict:
        with self._lock:
            rows = [r for r in self.leaves.values() if user_id is None or r["user_id"] == int(user_id)]
            by_status = Counter(r["status"] for r in rows)
            return {
                "total_requests": len(rows),
                "approved": by_status["approved"],
                "rejected": by_status["rejected"],
                "pending": by_status["pending"],
                "total_days_taken": sum(r["duration"] for r in rows if r["status"] == "approved"),
            }

    def has_approved_leave_on(self, user_id: int, on_date: str) -> bool:
        day = _iso_date(on_date)
        with self._lock:
            return any(
                r["user_id"] == int(user_id) and r["status"] == "approved" and r["start_date"] <= day <= r["end_date"]
                for r in self.leaves.values()
            )

    # --- swap requests ------------------------------------------------------

    def _swap_view(self, row: dict) -> dict:
        view = dict(row)
        view["requester_name"] = self._name(row["requester_id"])
        view["target_name"] = self._name(row["target_id"])
        view["reviewer_name"] = self._name(row["reviewer_id"])
        if row["assignment_type"] == "task":
            task = self.tasks.get(row["original_assignment_id"])
            view["assignment_title"] = task["title"] if task else None
        else:
            exam = self.exams.get(row["original_assignment_id"])
            view["assignment_title"] = exam["exam_name"] if exam else None
        return view

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
        with self._lock:
            busy = self.pending_swap_party_ids(assignment_type, original_assignment_id)
            if int(requester_id) in busy or int(target_id) in busy:
                return None
            sid = self._next_id()
            row = {
                "id": sid,
                "requester_id": requester_id,
                "target_id": target_id,
                "assignment_type": assignment_type,
                "original_assignment_id": original_assignment_id,
                "proposed_assignment_id": proposed_assignment_id,
                "reason": reason,
                "status": "pending",
                "reviewer_id": None,
                "reviewer_notes": None,
                "created_at": _now_iso(),
                "reviewed_at": None,
            }
            self.swaps[sid] = row
            return self._swap_view(row)

    def get_swap(self, swap_id: int) -> Optional[dict]:
        with self._lock:
            row = self.swaps.get(int(swap_id))
            return self._swap_view(row) if row else None

    def list_swaps(self, *, involving_user_id: Optional[int] = None) -> List[dict]:
        with self._lock:
            rows = [
                r
                for r in self.swaps.values()
                if involving_user_id is None or int(involving_user_id) in (r["requester_id"], r["target_id"])
            ]
            rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
            return [self._swap_view(r) for r in rows]

    def decide_swap_if_pending(
        self,
        swap_id: int,
        *,
        status: str,
        reviewer_id: int,
        reviewer_notes: Optional[str],
        reassignments: Iterable[tuple[int, int, int]] = (),
    ) -> Optional[dict]:
        moves = [(int(a), int(held), int(u)) for a, held, u in reassignments]
        with self._lock:
            row = self.swaps.get(int(swap_id))
            if not row or row["status"] != "pending":
                return None
            for aid, held_by, _ in moves:
                current = self.task_assignments.get(aid)
                if current is None or int(current["user_id"]) != held_by:
                    return None
            for aid, _, new_user in moves:
                self.task_assignments[int(aid)]["user_id"] = int(new_user)
            row.update(
                status=status,
                reviewer_id=reviewer_id,
                reviewer_notes=reviewer_notes,
                reviewed_at=_now_iso(),
            )
            return self._swap_view(row)

    def delete_swap_if_pending(self, swap_id: int) -> bool:
        with self._lock:
            row = self.swaps.get(int(swap_id))
            if not row or row["status"] != "pending":
                return False
            del self.swaps[int(swap_id)]
            return True

    def swap_statistics(self, *, involving_user_id: Optional[int] = None) -> dict:
        with self._lock:
            rows = [
                r
                for r in self.swaps.values()
                if involving_user_id is None or int(involving_user_id) in (r["requester_id"], r["target_id"])
            ]
            by_status = Counter(r["status"] for r in rows)
            by_kind = Counter(r["assignment_type"] for r in rows)
            return {
                "total_swaps": len(rows),
                "approved": by_status["approved"],
                "rejected": by_status["rejected"],
                "pending": by_status["pending"],
                "task_swaps": by_kind["task"],
                "exam_swaps": by_kind["exam"],
            }

    def pending_swap_party_ids(self, assignment_type: str, original_assignment_id: int) -> Set[int]:
        with self._lock:
            ids: Set[int] = set()
            for r in self.swaps.values():
                if (
                    r["status"] == "pending"
                    and r["assignment_type"] == assignment_type
                    and r["original_assignment_id"] == int(original_assignment_id)
                ):
                    ids.update((r["requester_id"], r["target_id"]))
            return ids

    # --- audit --------------------------------------------------------------

    def append_audit(self, entry: Mapping[str, Any]) -> dict:
        with self._lock:
            row = dict(entry)
            row["id"] = self._next_id()
            row.setdefault("created_at", _now_iso())
            self.audit_entries.append(row)
            return dict(row)

    def search_audit(
        self,
        filters: Mapping[str, Any],
        *,
        limit: int,
        offset: int,
        newest_first: bool = True,
    ) -> List[dict]:
        with self._lock:
            rows = list(self.audit_entries)
        for key in ("action", "entity", "entity_id", "user_id"):
            if key in filters:
                rows = [r for r in rows if str(r.get(key)) == str(filters[key])]
        if "description" in filters:
            needle = str(filters["description"]).lower()
            rows = [r for r in rows if needle in (r.get("description") or "").lower()]
        if "start_date" in filters:
            lo = str(filters["start_date"])
            rows = [r for r in rows if r["created_at"] >= lo]
        if "end_date" in filters:
            hi = str(filters["end_date"])
            rows = [r for r in rows if r["created_at"][: len(hi)] <= hi]
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=newest_first)
        return [dict(r) for r in rows[offset: offset + limit]]

    def audit_counts(self) -> Dict[str, Any]:
        with self._lock:
            rows = list(self.audit_entries)
        return {
            "total": len(rows),
            "by_action": dict(Counter(r["action"] for r in rows)),
            "by_entity": dict(Counter(r["entity"] for r in rows)),
            "by_day": dict(Counter(r["created_at"][:10] for r in rows)),
        }

    # --- notifications ------------------------------------------------------

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
        with self._lock:
            nid = self._next_id()
            row = {
                "id": nid,
                "user_id": int(user_id),
                "type": type,
                "title": title,
                "message": message,
                "link": link,
                "data": dict(data) if data else None,
                "is_read": False,
                "created_at": _now_iso(),
            }
            self.notifications[nid] = row
            return dict(row)

    def get_notification(self, notification_id: int) -> Optional[dict]:
        with self._lock:
            row = self.notifications.get(int(notification_id))
            return dict(row) if row else None

    def list_notifications(self, user_id: int, *, unread_only: bool, limit: int) -> List[dict]:
        with self._lock:
            rows = [
                r
                for r in self.notifications.values()
                if r["user_id"] == int(user_id) and (not unread_only or not r["is_read"])
            ]
            rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
            return [dict(r) for r in rows[:limit]]

    def unread_notification_count(self, user_id: int) -> int:
        with self._lock:
            return sum(1 for r in self.notifications.values() if r["user_id"] == int(user_id) and not r["is_read"])

    def mark_notification_read(self, notification_id: int, user_id: int) -> bool:
        with self._lock:
            row = self.notifications.get(int(notification_id))
            if not row or row["user_id"] != int(user_id):
                return False
            row["is_read"] = True
            return True

    def mark_all_notifications_read(self, user_id: int) -> int:
        with self._lock:
            changed = 0
            for r in self.notifications.values():
                if r["user_id"] == int(user_id) and not r["is_read"]:
                    r["is_read"] = True
                    changed += 1
            return changed

    def delete_notification(self, notification_id: int, user_id: int) -> bool:
        with self._lock:
            row = self.notifications.get(int(notification_id))
            if not row or row["user_id"] != int(user_id):
                return False
            del self.notifications[int(notification_id)]
            return True

    def delete_all_notifications(self, user_id: int) -> int:
        with self._lock:
            doomed = [nid for nid, r in self.notifications.items() if r["user_id"] == int(user_id)]
            for nid in doomed:
                del self.notifications[nid]
            return len(doomed)


__all__ = ["InMemoryWorkflowRepo"]
