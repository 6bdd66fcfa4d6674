"""
Notification API routes.

Permissions:
    - Owner operations (list, unread count, mark read, delete): any
      authenticated caller, restricted to their own notifications.
    - Sending (single, bulk, announcement): `manage_system_settings`.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from pydantic import AliasChoices, BaseModel, Field

from backend.identity_access.domain import Permission
from backend.identity_access.guard import require_permission
from backend.workflow.errors import ValidationError
from backend.workflow.services.common import parse_id

from backend.web.wiring import get_services
from backend.web.routes.security import current_identity, ensure_same_origin_for_cookie_writes, json_private, request_context

notifications_router = APIRouter(tags=["Notifications"])
logger = logging.getLogger("tams.web.notifications")


class NotificationCreate(BaseModel):
    user_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    type: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None
    link: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class BulkNotificationCreate(BaseModel):
    user_ids: List[int] = Field(default_factory=list, validation_alias=AliasChoices("user_ids", "userIds"))
    type: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None
    link: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class AnnouncementCreate(BaseModel):
    title: Optional[str] = None
    message: Optional[str] = None
    link: Optional[str] = None
    roles: Optional[List[str]] = None


def _owner(request: Request):
    svc = get_services()
    caller = svc.guard.enforce(current_identity(request), context=request_context(request))
    return svc, caller


def _sender(request: Request):
    svc = get_services()
    caller = svc.guard.enforce(
        current_identity(request),
        require_permission(Permission.MANAGE_SYSTEM_SETTINGS),
        context=request_context(request),
    )
    ensure_same_origin_for_cookie_writes(request)
    return svc, caller


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


@notifications_router.get("/api/notifications")
async def list_notifications(request: Request, unread_only: Optional[str] = None, limit: int = 50):
    """Newest first, with the caller's unread count alongside."""
    svc, caller = _owner(request)
    return json_private(svc.notifier.list_for(caller.user_id, unread_only=_parse_bool(unread_only), limit=limit))


@notifications_router.get("/api/notifications/unread-count")
async def unread_count(request: Request):
    svc, caller = _owner(request)
    return json_private({"unreadCount": svc.notifier.unread_count(caller.user_id)})


@notifications_router.patch("/api/notifications/mark-all-read")
async def mark_all_read(request: Request):
    svc, caller = _owner(request)
    ensure_same_origin_for_cookie_writes(request)
    count = svc.notifier.mark_all_read(caller.user_id)
    return json_private({"message": "All notifications marked as read", "count": count})


@notifications_router.patch("/api/notifications/{notification_id}/read")
async def mark_read(request: Request, notification_id: str):
    svc, caller = _owner(request)
    ensure_same_origin_for_cookie_writes(request)
    svc.notifier.mark_read(parse_id(notification_id, "notification_id"), caller.user_id)
    return json_private({"message": "Notification marked as read"})


@notifications_router.delete("/api/notifications/delete-all")
async def delete_all(request: Request):
    svc, caller = _owner(request)
    ensure_same_origin_for_cookie_writes(request)
    count = svc.notifier.delete_all(caller.user_id)
    return json_private({"message": "All notifications deleted", "count": count})


@notifications_router.delete("/api/notifications/{notification_id}")
async def delete_notification(request: Request, notification_id: str):
    svc, caller = _owner(request)
    ensure_same_origin_for_cookie_writes(request)
    svc.notifier.delete(parse_id(notification_id, "notification_id"), caller.user_id)
    return json_private({"message": "Notification deleted"})


@notifications_router.post("/api/notifications")
async def create_notification(request: Request, payload: NotificationCreate):
    svc, caller = _sender(request)
    if payload.user_id is None:
        raise ValidationError("missing_notification_fields", fields={"user_id": "required"})
    item = svc.notifier.send_to_user(
        payload.user_id, payload.type or "", payload.title or "", payload.message or "", payload.link, payload.data
    )
    svc.audit.log_modification("notification", item["id"], "create", caller.user_id, "Sent notification")
    return json_private({"message": "Notification created", "notification": item}, status_code=201)


@notifications_router.post("/api/notifications/bulk")
async def create_bulk(request: Request, payload: BulkNotificationCreate):
    """Best effort: the response reports how many recipients were reached."""
    svc, caller = _sender(request)
    if not payload.user_ids:
        raise ValidationError("missing_notification_fields", fields={"user_ids": "required"})
    count = svc.notifier.send_to_users(
        payload.user_ids, payload.type or "", payload.title or "", payload.message or "", payload.link, payload.data
    )
    svc.audit.log_modification(
        "notification", "bulk", "create", caller.user_id, f"Sent {count} notifications", {"requested": len(payload.user_ids)}
    )
    return json_private({"message": f"Sent {count} notifications", "count": count}, status_code=201)


@notifications_router.post("/api/notifications/announcements")
async def create_announcement(request: Request, payload: AnnouncementCreate):
    svc, caller = _sender(request)
    count = svc.notifier.send_system_announcement(
        payload.title or "", payload.message or "", payload.link, payload.roles or None
    )
    svc.audit.log_modification(
        "notification", "announcement", "create", caller.user_id, f"Announcement sent to {count} users"
    )
    return json_private({"message": f"Announcement sent to {count} users", "count": count}, status_code=201)
