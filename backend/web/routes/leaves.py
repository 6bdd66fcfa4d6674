"""
Leave request API routes.

Why:
    Thin adapter over `LeaveWorkflow`: resolve the caller, pass the guard,
    delegate, and answer with private JSON. Errors raised by the guard or the
    workflow are mapped centrally in `main.py`.

Permissions:
    - Reads: `view_applications` (scope further narrowed by the workflow).
    - Create: `create_application`.
    - Decide: `approve_application` or `reject_application`.
    - Delete: any authenticated caller; ownership is checked by the workflow.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import AliasChoices, BaseModel, Field

from backend.identity_access.domain import Permission
from backend.identity_access.guard import require_permission

from backend.web.wiring import get_services
from backend.web.routes.security import current_identity, ensure_same_origin_for_cookie_writes, json_private, request_context

leaves_router = APIRouter(tags=["Leaves"])
logger = logging.getLogger("tams.web.leaves")


class LeaveCreate(BaseModel):
    leave_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("leave_type", "leaveType"))
    start_date: Optional[str] = Field(default=None, validation_alias=AliasChoices("start_date", "startDate"))
    end_date: Optional[str] = Field(default=None, validation_alias=AliasChoices("end_date", "endDate"))
    reason: Optional[str] = None
    supporting_document_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("supporting_document_url", "supportingDocumentUrl")
    )


class StatusUpdate(BaseModel):
    status: Optional[str] = None
    reviewer_notes: Optional[str] = Field(default=None, validation_alias=AliasChoices("reviewer_notes", "reviewerNotes"))


@leaves_router.get("/api/leaves")
async def list_leaves(request: Request):
    """List leave requests visible to the caller (all for reviewers, own otherwise)."""
    svc = get_services()
    caller = svc.guard.enforce(
        current_identity(request), require_permission(Permission.VIEW_APPLICATIONS), context=request_context(request)
    )
    return json_private(svc.leaves.list_for(caller))


@leaves_router.get("/api/leaves/my-leaves")
async def my_leaves(request: Request):
    svc = get_services()
    caller = svc.guard.enforce(
        current_identity(request), require_permission(Permission.VIEW_APPLICATIONS), context=request_context(request)
    )
    return json_private(svc.leaves.list_mine(caller))


@leaves_router.get("/api/leaves/statistics")
async def leave_statistics(request: Request):
    """Counts by status plus approved days; global for reviewers, own otherwise."""
    svc = get_services()
    caller = svc.guard.enforce(
        current_identity(request), require_permission(Permission.VIEW_APPLICATIONS), context=request_context(request)
    )
    return json_private(svc.leaves.statistics(caller))


@leaves_router.get("/api/leaves/{leave_id}")
async def get_leave(request: Request, leave_id: str):
    svc = get_services()
    caller = svc.guard.enforce(
        current_identity(request), require_permission(Permission.VIEW_APPLICATIONS), context=request_context(request)
    )
    return json_private(svc.leaves.get(leave_id, caller))


@leaves_router.post("/api/leaves")
async def create_leave(request: Request, payload: LeaveCreate):
    """Create a pending leave request for the caller.

    Behavior:
        - 201 with `{leave, conflicts}`; `conflicts` lists the caller's tasks
          and proctored exams inside the range, or is null.
        - 400 on missing/invalid fields or an inverted date range.
    """
    svc = get_services()
    ctx = request_context(request)
    caller = svc.guard.enforce(
        current_identity(request), require_permission(Permission.CREATE_APPLICATION), context=ctx
    )
    ensure_same_origin_for_cookie_writes(request)
    leave = svc.leaves.create(
        caller,
        leave_type=payload.leave_type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
        supporting_document_url=payload.supporting_document_url,
        context=ctx,
    )
    return json_private(
        {
            "message": "Leave request created successfully",
            "leave": leave,
            "conflicts": svc.leaves.conflicts_for(leave),
        },
        status_code=201,
    )


@leaves_router.put("/api/leaves/{leave_id}/status")
async def update_leave_status(request: Request, leave_id: str, payload: StatusUpdate):
    """Approve or reject a pending leave request.

    Behavior:
        - 200 with the updated request; the requester is notified.
        - 400 invalid status, 403 not a reviewer, 404 unknown id,
          409 already decided (including a lost concurrent decision).
    """
    svc = get_services()
    ctx = request_context(request)
    caller = svc.guard.enforce(
        current_identity(request),
        require_permission(Permission.APPROVE_APPLICATION, Permission.REJECT_APPLICATION),
        context=ctx,
    )
    ensure_same_origin_for_cookie_writes(request)
    leave = svc.leaves.decide(leave_id, caller, payload.status, payload.reviewer_notes, context=ctx)
    return json_private({"message": f"Leave request {leave['status']}", "leave": leave})


@leaves_router.delete("/api/leaves/{leave_id}")
async def delete_leave(request: Request, leave_id: str):
    svc = get_services()
    ctx = request_context(request)
    caller = svc.guard.enforce(current_identity(request), context=ctx)
    ensure_same_origin_for_cookie_writes(request)
    svc.leaves.delete(leave_id, caller, context=ctx)
    return json_private({"message": "Leave request deleted successfully"})
