"""
Postgres-backed repository for the workflow core (psycopg 3).

Design:
- Each call opens a short-lived connection; multi-statement operations run in
  one transaction and commit once.
- Returns plain dicts (`dict_row`) with dates as `YYYY-MM-DD` and timestamps as
  ISO-8601 UTC strings, matching `InMemoryWorkflowRepo`.
- Driver errors surface as `PersistenceError`; the original exception is kept
  as `__cause__` for the logs and never reaches clients.

Concurrency:
- Decisions and deletes are conditional statements
  (`... where id = %s and status = 'pending'`); the affected row decides who
  won. Swap approvals move `task_assignments` rows in the same transaction.
"""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set

try:
    import psycopg
    from psycopg.rows import dict_row
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    dict_row = None  # type: ignore
    Json = None  # type: ignore
    HAVE_PSYCOPG = False

from .errors import PersistenceError

logger = logging.getLogger("tams.workflow.repo")

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_TS = "to_char({col} at time zone 'utc', 'YYYY-MM-DD\"T\"HH24:MI:SS\"+00:00\"')"
_DAY = "to_char({col}, 'YYYY-MM-DD')"


def _ts(col: str, alias: Optional[str] = None) -> str:
    return f"{_TS.format(col=col)} as {alias or col.split('.')[-1]}"


def _day(col: str, alias: Optional[str] = None) -> str:
    return f"{_DAY.format(col=col)} as {alias or col.split('.')[-1]}"


def _dsn() -> str:
    for dsn in (os.getenv("TAMS_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBWorkflowRepo")


_LEAVE_SELECT = f"""
    select l.id, l.user_id, l.leave_type,
           {_day('l.start_date')}, {_day('l.end_date')},
           l.duration, l.reason, l.supporting_document_url, l.status,
           l.reviewer_id, l.reviewer_notes,
           {_ts('l.created_at')},
           case when l.reviewed_at is null then null else {_TS.format(col='l.reviewed_at')} end as reviewed_at,
           u.full_name as user_name,
           rev.full_name as reviewer_name
    from leave_requests l
    join users u on u.id = l.user_id
    left join users rev on rev.id = l.reviewer_id
"""

_SWAP_SELECT = f"""
    select s.id, s.requester_id, s.target_id, s.assignment_type,
           s.original_assignment_id, s.proposed_assignment_id, s.reason, s.status,
           s.reviewer_id, s.reviewer_notes,
           {_ts('s.created_at')},
           case when s.reviewed_at is null then null else {_TS.format(col='s.reviewed_at')} end as reviewed_at,
           r.full_name as requester_name,
           t.full_name as target_name,
           rev.full_name as reviewer_name,
           case when s.assignment_type = 'task' then task.title else exam.exam_name end as assignment_title
    from swap_requests s
    join users r on r.id = s.requester_id
    join users t on t.id = s.target_id
    left join users rev on rev.id = s.reviewer_id
    left join tasks task on task.id = s.original_assignment_id and s.assignment_type = 'task'
    left join exams exam on exam.id = s.original_assignment_id and s.assignment_type = 'exam'
"""

_AUDIT_COLUMNS = f"""
    id, action, entity, entity_id, user_id, description, metadata,
    ip_address, user_agent, {_ts('created_at')}
"""

_NOTIFICATION_COLUMNS = f"""
    id, user_id, type, title, message, link, data, is_read, {_ts('created_at')}
"""


class DBWorkflowRepo:
    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBWorkflowRepo")
        self._dsn = dsn or _dsn()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with psycopg.connect(self._dsn, row_factory=dict_row) as conn:
                yield conn
        except psycopg.Error as exc:
            logger.warning("Workflow storage error: %s", type(exc).__name__)
            raise PersistenceError("storage_unavailable") from exc

    def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
        return dict(row) if row else None

    def _fetch_all(self, sql: str, params: tuple = ()) -> List[dict]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
        return [dict(r) for r in rows]

    def apply_schema(self) -> None:
        """Create the workflow tables when missing (dev and test databases)."""
        ddl = SCHEMA_PATH.read_text(encoding="utf-8")
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(ddl)
            conn.commit()

    # --- users --------------------------------------------------------------

    def get_user(self, user_id: int) -> Optional[dict]:
        return self._fetch_one(
            "select id, full_name, email, role, status from users where id = %s", (int(user_id),)
        )

    def list_active_users(self) -> List[dict]:
        return self._fetch_all(
            "select id, full_name, email, role, status from users where status = 'active' order by id"
        )

    # --- tasks / exams ------------------------------------------------------

    def get_task(self, task_id: int) -> Optional[dict]:
        return self._fetch_one(
            f"select id, course_id, title, task_type, {_day('due_date')}, status from tasks where id = %s",
            (int(task_id),),
        )

    def get_exam(self, exam_id: int) -> Optional[dict]:
        return self._fetch_one(
            f"select id, course_id, exam_name, {_day('exam_date')} from exams where id = %s",
            (int(exam_id),),
        )

    def find_task_assignment(self, task_id: int, user_id: int) -> Optional[dict]:
        return self._fetch_one(
            "select id, task_id, user_id from task_assignments where task_id = %s and user_id = %s order by id limit 1",
            (int(task_id), int(user_id)),
        )

    def find_proctoring_assignment(self, user_id: int, course_id: int, on_date: str) -> Optional[dict]:
        return self._fetch_one(
            """
            select ta.id, ta.task_id, ta.user_id
            from task_assignments ta
            join tasks t on t.id = ta.task_id
            where t.task_type = 'proctoring'
              and ta.user_id = %s
              and t.course_id = %s
              and t.due_date = %s::date
            order by ta.id
            limit 1
            """,
            (int(user_id), int(course_id), str(on_date)[:10]),
        )

    def list_course_assignee_ids(self, course_id: int, *, task_type: Optional[str] = None) -> List[int]:
        sql = """
            select distinct ta.user_id
            from task_assignments ta
            join tasks t on t.id = ta.task_id
            where t.course_id = %s
        """
        params: tuple = (int(course_id),)
        if task_type is not None:
            sql += " and t.task_type = %s"
            params += (task_type,)
        sql += " order by ta.user_id"
        return [int(r["user_id"]) for r in self._fetch_all(sql, params)]

    def list_task_conflicts(self, user_id: int, start: date, end: date) -> List[dict]:
        return self._fetch_all(
            f"""
            select t.id, t.title, t.task_type, {_day('t.due_date')}, t.course_id
            from tasks t
            join task_assignments ta on ta.task_id = t.id
            where ta.user_id = %s
              and t.status = 'active'
              and t.due_date between %s and %s
            order by t.due_date, t.id
            """,
            (int(user_id), start, end),
        )

    def list_exam_conflicts(self, user_id: int, start: date, end: date) -> List[dict]:
        return self._fetch_all(
            f"""
            select distinct e.id, e.exam_name as title, e.course_id, {_day('e.exam_date', 'due_date')}
            from exams e
            join tasks t on t.course_id = e.course_id and t.task_type = 'proctoring'
            join task_assignments ta on ta.task_id = t.id
            where ta.user_id = %s
              and e.exam_date between %s and %s
            order by due_date, e.id
            """,
            (int(user_id), start, end),
        )

    # --- leave requests -----------------------------------------------------

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
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into leave_requests
                      (user_id, leave_type, start_date, end_date, duration, reason, supporting_document_url, status)
                    values (%s, %s, %s, %s, %s, %s, %s, 'pending')
                    returning id
                    """,
                    (user_id, leave_type, start_date, end_date, duration, reason, supporting_document_url),
                )
                row = cur.fetchone()
                if not row:
                    raise PersistenceError("leave_insert_returned_no_row")
                conn.commit()
        created = self.get_leave(int(row["id"]))
        if created is None:
            raise PersistenceError("leave_not_readable_after_insert")
        return created

    def get_leave(self, leave_id: int) -> Optional[dict]:
        return self._fetch_one(_LEAVE_SELECT + " where l.id = %s", (int(leave_id),))

    def list_leaves(self, *, user_id: Optional[int] = None) -> List[dict]:
        if user_id is None:
            return self._fetch_all(_LEAVE_SELECT + " order by l.created_at desc, l.id desc")
        return self._fetch_all(
            _LEAVE_SELECT + " where l.user_id = %s order by l.created_at desc, l.id desc", (int(user_id),)
        )

    def decide_leave_if_pending(
        self, leave_id: int, *, status: str, reviewer_id: int, reviewer_notes: Optional[str]
    ) -> Optional[dict]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    update leave_requests
                       set status = %s, reviewer_id = %s, reviewer_notes = %s, reviewed_at = now()
                     where id = %s and status = 'pending'
                    returning id
                    """,
                    (status, reviewer_id, reviewer_notes, int(leave_id)),
                )
                won = cur.fetchone() is not None
                conn.commit()
        return self.get_leave(int(leave_id)) if won else None

    def delete_leave_if_pending(self, leave_id: int) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("delete from leave_requests where id = %s and status = 'pending'", (int(leave_id),))
                deleted = cur.rowcount == 1
                conn.commit()
        return deleted

    def leave_statistics(self, *, user_id: Optional[int] = None) -> dict:
        sql = """
            select count(*) as total_requests,
                   count(*) filter (where status = 'approved') as approved,
                   count(*) filter (where status = 'rejected') as rejected,
                   count(*) filter (where status = 'pending') as pending,
                   coalesce(sum(duration) filter (where status = 'approved'), 0) as total_days_taken
            from leave_requests
        """
        params: tuple = ()
        if user_id is not None:
            sql += " where user_id = %s"
            params = (int(user_id),)
        row = self._fetch_one(sql, params) or {}
        return {k: int(row.get(k) or 0) for k in ("total_requests", "approved", "rejected", "pending", "total_days_taken")}

    def has_approved_leave_on(self, user_id: int, on_date: str) -> bool:
        row = self._fetch_one(
            """
            select 1 as hit from leave_requests
            where user_id = %s and status = 'approved' and %s::date between start_date and end_date
            limit 1
            """,
            (int(user_id), str(on_date)[:10]),
        )
        return row is not None

    # --- swap requests ------------------------------------------------------

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
        with self._connect() as conn:
            with conn.cursor() as cur:
                # Held until commit: one create per assignment at a time.
                cur.execute(
                    "select pg_advisory_xact_lock(hashtext(%s))",
                    (f"swap:{assignment_type}:{int(original_assignment_id)}",),
                )
                cur.execute(
                    """
                    insert into swap_requests
                      (requester_id, target_id, assignment_type, original_assignment_id,
                       proposed_assignment_id, reason, status)
                    select %s::bigint, %s::bigint, %s::text, %s::bigint, %s::bigint, %s::text, 'pending'
                     where not exists (
                        select 1 from swap_requests
                         where status = 'pending'
                           and assignment_type = %s::text
                           and original_assignment_id = %s::bigint
                           and (requester_id in (%s::bigint, %s::bigint) or target_id in (%s::bigint, %s::bigint))
                     )
                    returning id
                    """,
                    (
                        requester_id,
                        target_id,
                        assignment_type,
                        original_assignment_id,
                        proposed_assignment_id,
                        reason,
                        assignment_type,
                        original_assignment_id,
                        requester_id,
                        target_id,
                        requester_id,
                        target_id,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        if not row:
            return None
        created = self.get_swap(int(row["id"]))
        if created is None:
            raise PersistenceError("swap_not_readable_after_insert")
        return created

    def get_swap(self, swap_id: int) -> Optional[dict]:
        return self._fetch_one(_SWAP_SELECT + " where s.id = %s", (int(swap_id),))

    def list_swaps(self, *, involving_user_id: Optional[int] = None) -> List[dict]:
        if involving_user_id is None:
            return self._fetch_all(_SWAP_SELECT + " order by s.created_at desc, s.id desc")
        uid = int(involving_user_id)
        return self._fetch_all(
            _SWAP_SELECT + " where s.requester_id = %s or s.target_id = %s order by s.created_at desc, s.id desc",
            (uid, uid),
        )

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
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    update swap_requests
                       set status = %s, reviewer_id = %s, reviewer_notes = %s, reviewed_at = now()
                     where id = %s and status = 'pending'
                    returning id
                    """,
                    (status, reviewer_id, reviewer_notes, int(swap_id)),
                )
                if cur.fetchone() is None:
                    conn.rollback()
                    return None
                for assignment_id, held_by, new_user_id in moves:
                    cur.execute(
                        "update task_assignments set user_id = %s where id = %s and user_id = %s",
                        (new_user_id, assignment_id, held_by),
                    )
                    if cur.rowcount != 1:
                        # Moved by another approval since the decision was computed.
                        conn.rollback()
                        return None
                conn.commit()
        return self.get_swap(int(swap_id))

    def delete_swap_if_pending(self, swap_id: int) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("delete from swap_requests where id = %s and status = 'pending'", (int(swap_id),))
                deleted = cur.rowcount == 1
                conn.commit()
        return deleted

    def swap_statistics(self, *, involving_user_id: Optional[int] = None) -> dict:
        sql = """
            select count(*) as total_swaps,
                   count(*) filter (where status = 'approved') as approved,
                   count(*) filter (where status = 'rejected') as rejected,
                   count(*) filter (where status = 'pending') as pending,
                   count(*) filter (where assignment_type = 'task') as task_swaps,
                   count(*) filter (where assignment_type = 'exam') as exam_swaps
            from swap_requests
        """
        params: tuple = ()
        if involving_user_id is not None:
            sql += " where requester_id = %s or target_id = %s"
            params = (int(involving_user_id), int(involving_user_id))
        row = self._fetch_one(sql, params) or {}
        keys = ("total_swaps", "approved", "rejected", "pending", "task_swaps", "exam_swaps")
        return {k: int(row.get(k) or 0) for k in keys}

    def pending_swap_party_ids(self, assignment_type: str, original_assignment_id: int) -> Set[int]:
        rows = self._fetch_all(
            """
            select requester_id, target_id from swap_requests
            where status = 'pending' and assignment_type = %s and original_assignment_id = %s
            """,
            (assignment_type, int(original_assignment_id)),
        )
        ids: Set[int] = set()
        for r in rows:
            ids.update((int(r["requester_id"]), int(r["target_id"])))
        return ids

    # --- audit --------------------------------------------------------------

    def append_audit(self, entry: Mapping[str, Any]) -> dict:
        metadata = entry.get("metadata")
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    insert into audit_logs
                      (action, entity, entity_id, user_id, description, metadata, ip_address, user_agent, created_at)
                    values (%s, %s, %s, %s, %s, %s, %s, %s, coalesce(%s::timestamptz, now()))
                    returning {_AUDIT_COLUMNS}
                    """,
                    (
                        entry["action"],
                        entry["entity"],
                        str(entry.get("entity_id") or "N/A"),
                        str(entry.get("user_id") or "anonymous"),
                        entry.get("description") or "",
                        Json(metadata) if metadata is not None else None,
                        entry.get("ip_address"),
                        entry.get("user_agent"),
                        entry.get("created_at"),
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        return dict(row) if row else dict(entry)

    def search_audit(
        self,
        filters: Mapping[str, Any],
        *,
        limit: int,
        offset: int,
        newest_first: bool = True,
    ) -> List[dict]:
        where: List[str] = []
        params: List[Any] = []
        for key in ("action", "entity", "entity_id", "user_id"):
            if key in filters:
                where.append(f"{key} = %s")
                params.append(str(filters[key]))
        if "description" in filters:
            where.append("description ilike %s")
            params.append(f"%{filters['description']}%")
        if "start_date" in filters:
            where.append("created_at >= %s::timestamptz")
            params.append(str(filters["start_date"]))
        if "end_date" in filters:
            end = str(filters["end_date"])
            if len(end) == 10:
                where.append("created_at < (%s::date + 1)")
            else:
                where.append("created_at <= %s::timestamptz")
            params.append(end)
        sql = f"select {_AUDIT_COLUMNS} from audit_logs"
        if where:
            sql += " where " + " and ".join(where)
        direction = "desc" if newest_first else "asc"
        sql += f" order by audit_logs.created_at {direction}, id {direction} limit %s offset %s"
        params.extend([int(limit), int(offset)])
        return self._fetch_all(sql, tuple(params))

    def audit_counts(self) -> Dict[str, Any]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select count(*) as n from audit_logs")
                total = int((cur.fetchone() or {}).get("n") or 0)
                cur.execute("select action as k, count(*) as n from audit_logs group by action")
                by_action = {r["k"]: int(r["n"]) for r in cur.fetchall() or []}
                cur.execute("select entity as k, count(*) as n from audit_logs group by entity")
                by_entity = {r["k"]: int(r["n"]) for r in cur.fetchall() or []}
                cur.execute(
                    f"select {_DAY.format(col='created_at')} as k, count(*) as n from audit_logs group by 1"
                )
                by_day = {r["k"]: int(r["n"]) for r in cur.fetchall() or []}
        return {"total": total, "by_action": by_action, "by_entity": by_entity, "by_day": by_day}

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
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    insert into notifications (user_id, type, title, message, link, data, is_read)
                    values (%s, %s, %s, %s, %s, %s, false)
                    returning {_NOTIFICATION_COLUMNS}
                    """,
                    (int(user_id), type, title, message, link, Json(dict(data)) if data else None),
                )
                row = cur.fetchone()
                conn.commit()
        if not row:
            raise PersistenceError("notification_insert_returned_no_row")
        return dict(row)

    def get_notification(self, notification_id: int) -> Optional[dict]:
        return self._fetch_one(
            f"select {_NOTIFICATION_COLUMNS} from notifications where id = %s", (int(notification_id),)
        )

    def list_notifications(self, user_id: int, *, unread_only: bool, limit: int) -> List[dict]:
        sql = f"select {_NOTIFICATION_COLUMNS} from notifications where user_id = %s"
        if unread_only:
            sql += " and is_read = false"
        sql += " order by notifications.created_at desc, id desc limit %s"
        return self._fetch_all(sql, (int(user_id), int(limit)))

    def unread_notification_count(self, user_id: int) -> int:
        row = self._fetch_one(
            "select count(*) as n from notifications where user_id = %s and is_read = false", (int(user_id),)
        )
        return int((row or {}).get("n") or 0)

    def _execute_count(self, sql: str, params: tuple) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                count = cur.rowcount
                conn.commit()
        return max(int(count or 0), 0)

    def mark_notification_read(self, notification_id: int, user_id: int) -> bool:
        return self._execute_count(
            "update notifications set is_read = true where id = %s and user_id = %s",
            (int(notification_id), int(user_id)),
        ) == 1

    def mark_all_notifications_read(self, user_id: int) -> int:
        return self._execute_count(
            "update notifications set is_read = true where user_id = %s and is_read = false", (int(user_id),)
        )

    def delete_notification(self, notification_id: int, user_id: int) -> bool:
        return self._execute_count(
            "delete from notifications where id = %s and user_id = %s", (int(notification_id), int(user_id))
        ) == 1

    def delete_all_notifications(self, user_id: int) -> int:
        return self._execute_count("delete from notifications where user_id = %s", (int(user_id),))


__all__ = ["DBWorkflowRepo", "HAVE_PSYCOPG"]
