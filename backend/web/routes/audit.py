"""
Audit log API routes (read-only).

Permissions:
    Every endpoint requires `view_audit_logs` (admin, department chair, dean).
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request

from backend.identity_access.domain import Permission
from backend.identity_access.guard import require_permission
from backend.workflow.errors import ValidationError

from backend.web.wiring import get_services
from backend.web.routes.security import current_identity, json_private, request_context

audit_router = APIRouter(tags=["Audit"])
logger = logging.getLogger("tams.web.audit")


def _auditor(request: Request):
    svc = get_services()
    svc.guard.enforce(
        current_identity(request), require_permission(Permission.VIEW_AUDIT_LOGS), context=request_context(request)
    )
    return svc


def _newest_first(order: Optional[str]) -> bool:
    value = (order or "desc").strip().lower()
    if value not in ("asc", "desc"):
        raise ValidationError("invalid_order", fields={"order": "must be asc or desc"})
    return value == "desc"


@audit_router.get("/api/audit-logs")
async def search_audit_logs(
    request: Request,
    action: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
    description: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    order: Optional[str] = None,
):
    """Filtered, paginated search (limit 1..1000, default 100; newest first)."""
    svc = _auditor(request)
    filters = {
        "action": action,
        "entity": entity,
        "entity_id": entity_id,
        "user_id": user_id,
        "description": description,
        "start_date": start_date,
        "end_date": end_date,
    }
    logs = svc.audit.search(filters, limit=limit, offset=offset, newest_first=_newest_first(order))
    return json_private(logs)


@audit_router.get("/api/audit-logs/stats")
async def audit_stats(request: Request):
    svc = _auditor(request)
    return json_private(svc.audit.statistics())


@audit_router.get("/api/audit-logs/entity/{entity}/{entity_id}")
async def audit_by_entity(request: Request, entity: str, entity_id: str, limit: Optional[str] = None, offset: Optional[str] = None):
    svc = _auditor(request)
    return json_private(svc.audit.find_by_entity(entity, entity_id, limit=limit, offset=offset))


@audit_router.get("/api/audit-logs/user/{user_id}")
async def audit_by_user(request: Request, user_id: str, limit: Optional[str] = None, offset: Optional[str] = None):
    svc = _auditor(request)
    return json_private(svc.audit.find_by_user(user_id, limit=limit, offset=offset))


@audit_router.get("/api/audit-logs/action/{action}")
async def audit_by_action(request: Request, action: str, limit: Optional[str] = None, offset: Optional[str] = None):
    svc = _auditor(request)
    return json_private(svc.audit.find_by_action(action, limit=limit, offset=offset))
