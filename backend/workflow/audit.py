"""
Audit trail: append-only record of authorization decisions and mutating actions.

Why:
    Reviewers and admins need to reconstruct who did what, including attempts
    that were denied or failed. Writes are fire-and-forget: a broken audit
    store must never abort or mask the outcome of the primary operation.

Design:
    One explicitly constructed `AuditTrail` per process (see `web/wiring.py`),
    passed to the guard and the workflow services. Storage goes through
    `AuditRepoProtocol`; failures are reported on the `tams.audit` logger only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from .ports import AuditRepoProtocol

logger = logging.getLogger("tams.audit")

ANONYMOUS = "anonymous"
SYSTEM = "system"

SEARCH_FILTER_KEYS = ("action", "entity", "entity_id", "user_id", "description", "start_date", "end_date")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RequestContext:
    """Caller details copied into audit entries when available."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None


def _clamp_page(limit: object, offset: object) -> tuple[int, int]:
    try:
        lim = int(limit) if limit is not None else 100
    except (TypeError, ValueError):
        lim = 100
    try:
        off = int(offset) if offset is not None else 0
    except (TypeError, ValueError):
        off = 0
    return max(1, min(lim, 1000)), max(0, off)


def _as_text(value: object, default: str) -> str:
    if value is None or value == "":
        return default
    return str(value)


class AuditTrail:
    def __init__(
        self,
        repo: AuditRepoProtocol,
        *,
        enabled: bool = True,
        console_output: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repo
        self.enabled = enabled
        self.console_output = console_output
        self._clock = clock

    # --- write side ---------------------------------------------------------

    def record(
        self,
        *,
        action: str,
        entity: str,
        entity_id: object = None,
        user_id: object = None,
        description: str = "",
        metadata: Optional[Mapping[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[dict]:
        """Append one entry. Never raises; returns the stored entry or None."""
        if not self.enabled:
            return None
        try:
            entry = {
                "action": action,
                "entity": entity,
                "entity_id": _as_text(entity_id, "N/A"),
                "user_id": _as_text(user_id, ANONYMOUS),
                "description": description or "",
                "metadata": dict(metadata) if metadata else None,
                "ip_address": context.ip_address if context else None,
                "user_agent": context.user_agent if context else None,
                "created_at": self._clock().isoformat(),
            }
            if self.console_output:
                logger.info(
                    "[AUDIT] %s | %s | %s | %s | %s | %s",
                    entry["created_at"],
                    action,
                    entity,
                    entry["entity_id"],
                    entry["user_id"],
                    entry["description"],
                )
            return self._repo.append_audit(entry)
        except Exception:
            logger.exception("Audit write failed (action=%s entity=%s)", action, entity)
            return None

    def log_auth(
        self,
        action: str,
        user_id: object,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[dict]:
        return self.record(
            action=action,
            entity="user",
            entity_id=_as_text(user_id, ANONYMOUS),
            user_id=_as_text(user_id, ANONYMOUS),
            description=description,
            metadata=metadata,
            context=context,
        )

    def log_modification(
        self,
        entity: str,
        entity_id: object,
        action: str,
        user_id: object,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[dict]:
        """Record `<action>_<entity>` (e.g. `create_leave_request`)."""
        return self.record(
            action=f"{action}_{entity}",
            entity=entity,
            entity_id=entity_id,
            user_id=_as_text(user_id, ANONYMOUS),
            description=description,
            metadata=metadata,
            context=context,
        )

    def log_system(self, action: str, description: str, metadata: Optional[Mapping[str, Any]] = None) -> Optional[dict]:
        return self.record(
            action=action,
            entity=SYSTEM,
            entity_id=SYSTEM,
            user_id=SYSTEM,
            description=description,
            metadata=metadata,
        )

    def log_error(
        self,
        entity: str,
        error: BaseException,
        user_id: object = None,
        description: str = "An error occurred",
        context: Optional[RequestContext] = None,
    ) -> Optional[dict]:
        # Stack traces stay in the application log, not in the audit store.
        return self.record(
            action="error",
            entity=entity,
            entity_id=_as_text(user_id, ANONYMOUS),
            user_id=_as_text(user_id, ANONYMOUS),
            description=description,
            metadata={"error": {"name": type(error).__name__, "message": str(error)}},
            context=context,
        )

    # --- read side ----------------------------------------------------------

    def search(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        limit: object = 100,
        offset: object = 0,
        newest_first: bool = True,
    ) -> List[dict]:
        lim, off = _clamp_page(limit, offset)
        clean: Dict[str, Any] = {}
        for key in SEARCH_FILTER_KEYS:
            value = (filters or {}).get(key)
            if value is None or value == "":
                continue
            if key in ("start_date", "end_date") and isinstance(value, (date, datetime)):
                value = value.isoformat()
            clean[key] = str(value)
        return self._repo.search_audit(clean, limit=lim, offset=off, newest_first=newest_first)

    def find_by_entity(self, entity: str, entity_id: object, *, limit: object = 100, offset: object = 0) -> List[dict]:
        return self.search({"entity": entity, "entity_id": entity_id}, limit=limit, offset=offset)

    def find_by_user(self, user_id: object, *, limit: object = 100, offset: object = 0) -> List[dict]:
        return self.search({"user_id": user_id}, limit=limit, offset=offset)

    def find_by_action(self, action: str, *, limit: object = 100, offset: object = 0) -> List[dict]:
        return self.search({"action": action}, limit=limit, offset=offset)

    def statistics(self) -> Dict[str, Any]:
        """Counts by action, entity and day plus the total."""
        counts = self._repo.audit_counts()
        return {
            "total": int(counts.get("total", 0)),
            "by_action": dict(counts.get("by_action") or {}),
            "by_entity": dict(counts.get("by_entity") or {}),
            "by_day": dict(counts.get("by_day") or {}),
        }


__all__ = ["ANONYMOUS", "AuditTrail", "RequestContext", "SYSTEM"]
