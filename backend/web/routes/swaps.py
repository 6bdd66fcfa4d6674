"""
Swap request API routes.

Why:
    Thin adapter over `SwapWorkflow` and `EligibilityResolver`.

Permissions:
    - Reads and eligible targets: `view_applications`.
    - Create: `create_application`.
    - Decide: any authenticated caller; the swap review policy in the workflow
      decides (target, or reviewer roles when the policy allows it).
    - Delete: any authenticated caller; ownership is checked by the workflow.
"""
from __future__ import annotations

import logging
from typing import Optional, Union

from fastapi import APIRouter, Request
from pydantic import AliasChoices, BaseModel, Field

from backend.identity_access.domain import Permission
from backend.identity_access.guard import require_permission
from backend.workflow.services.common import parse_id
from backend.workflow.services.swaps import normalize_assignment_kind

from backend.web.wiring import get_services
from backend.web.routes.leaves import StatusUpdate
from backend.web.routes.security import current_identity, ensure_same_origin_for_cookie_writes, json_private, request_context

swaps_router = APIRouter(tags=["Swaps"])
logger = logging.getLogger("tams.web.swaps")

IdLike = Union[int, str, None]


class SwapCreate(BaseModel):
    target_id: IdLike = Field(default=None, validation_alias=AliasChoices("target_id", "targetId"))
    assignment_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("assignment_type", "assignmentType")
    )
    original_assignment_id: IdLike = Field(
        default=None, validation_alias=AliasChoices("original_assignment_id", "originalAssignmentId")
    )
    proposed_assignment_id: IdLike = Field(
        default=None, validation_alias=AliasChoices("proposed_assignment_id", "proposedAssignmentId")
    )
    reason: Optional[str] = None


def _reader(request: Request):
    svc = get_services()
    caller = svc.guard.enforce(
        current_identity(request), require_permission(Permission.VIEW_APPLICATIONS), context=request_context(request)
    )
    return svc, caller


@swaps_router.get("/api/swaps")
async def list_swaps(request: Request):
    svc, caller = _reader(request)
    return json_private(svc.swaps.list_for(caller))


@swaps_router.get("/api/swaps/my-swaps")
async def my_swaps(request: Request):
    svc, caller = _reader(request)
    return json_private(svc.swaps.list_mine(caller))


@swaps_router.get("/api/swaps/statistics")
async def swap_statistics(request: Request):
    svc, caller = _reader(request)
    return json_private(svc.swaps.statistics(caller))


@swaps_router.get("/api/swaps/eligible-targets/{assignment_id}/{assignment_type}")
async def eligible_targets(request: Request, assignment_id: str, assignment_type: str):
    """Users who may be asked to take over the assignment (possibly empty)."""
    svc, caller = _reader(request)
    kind = normalize_assignment_kind(assignment_type)
    aid = parse_id(assignment_id, "assignment_id")
    return json_private(svc.eligibility.eligible_targets(aid, kind, caller))


@swaps_router.get("/api/swaps/{swap_id}")
async def get_swap(request: Request, swap_id: str):
    svc, caller = _reader(request)
    return json_private(svc.swaps.get(swap_id, caller))


@swaps_router.post("/api/swaps")
async def create_swap(request: Request, payload: SwapCreate):
    """Create a pending swap request; the target is notified.

    Behavior:
        - 201 with `{swap}`.
        - 400 on missing fields, self-swap, unknown target, or assignments
          not held by the requester (or, for a proposed one, the target).
        - 409 when either party already has a pending swap on the assignment.
    """
    svc = get_services()
    ctx = request_context(request)
    caller = svc.guard.enforce(
        current_identity(request), require_permission(Permission.CREATE_APPLICATION), context=ctx
    )
    ensure_same_origin_for_cookie_writes(request)
    swap = svc.swaps.create(
        caller,
        target_id=payload.target_id,
        assignment_type=payload.assignment_type,
        original_assignment_id=payload.original_assignment_id,
        proposed_assignment_id=payload.proposed_assignment_id,
        reason=payload.reason,
        context=ctx,
    )
    return json_private({"message": "Swap request created successfully", "swap": swap}, status_code=201)


@swaps_router.put("/api/swaps/{swap_id}/status")
async def update_swap_status(request: Request, swap_id: str, payload: StatusUpdate):
    svc = get_services()
    ctx = request_context(request)
    caller = svc.guard.enforce(current_identity(request), context=ctx)
    ensure_same_origin_for_cookie_writes(request)
    swap = svc.swaps.decide(swap_id, caller, payload.status, payload.reviewer_notes, context=ctx)
    return json_private({"message": f"Swap request {swap['status']}", "swap": swap})


@swaps_router.delete("/api/swaps/{swap_id}")
async def delete_swap(request: Request, swap_id: str):
    svc = get_services()
    ctx = request_context(request)
    caller = svc.guard.enforce(current_identity(request), context=ctx)
    ensure_same_origin_for_cookie_writes(request)
    svc.swaps.delete(swap_id, caller, context=ctx)
    return json_private({"message": "Swap request deleted successfully"})
