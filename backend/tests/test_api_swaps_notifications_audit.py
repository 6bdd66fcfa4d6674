"""
Swap, notification and audit API contracts.
"""
from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport

from backend.web import main

from conftest import ADA, ALICE, BOB, CAROL, CHEN, DANA, ERIN, IVAN

pytestmark = pytest.mark.anyio("asyncio")


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")


def _swap_payload(world, **overrides):
    payload = {
        "targetId": BOB,
        "assignmentType": "task",
        "originalAssignmentId": world.task_alice,
        "proposedAssignmentId": world.task_bob,
        "reason": "Conference travel",
    }
    payload.update(overrides)
    return payload


async def test_swap_round_trip_by_target(services, session_for, world):
    async with _client() as c:
        targets = await c.get(
            f"/api/swaps/eligible-targets/{world.task_alice}/task", headers=session_for(ALICE)
        )
        assert [t["id"] for t in targets.json()] == [BOB, CAROL, ERIN]

        created = await c.post("/api/swaps", json=_swap_payload(world), headers=session_for(ALICE))
        assert created.status_code == 201
        swap = created.json()["swap"]
        assert created.json()["message"] == "Swap request created successfully"

        dup = await c.post("/api/swaps", json=_swap_payload(world, targetId=CAROL, proposedAssignmentId=None), headers=session_for(ALICE))
        assert dup.status_code == 409
        assert dup.json()["detail"] == "swap_already_pending"

        outsider = await c.put(f"/api/swaps/{swap['id']}/status", json={"status": "approved"}, headers=session_for(CAROL))
        assert outsider.status_code == 403

        decided = await c.put(f"/api/swaps/{swap['id']}/status", json={"status": "approved"}, headers=session_for(BOB))
        assert decided.status_code == 200
        assert decided.json()["message"] == "Swap request approved"

        fetched = await c.get(f"/api/swaps/{swap['id']}", headers=session_for(ALICE))
        hidden = await c.get(f"/api/swaps/{swap['id']}", headers=session_for(CAROL))
        mine = await c.get("/api/swaps/my-swaps", headers=session_for(BOB))

    assert fetched.json()["status"] == "approved"
    assert hidden.status_code == 403
    assert [s["id"] for s in mine.json()] == [swap["id"]]
    assert world.repo.task_assignments[world.row_alice]["user_id"] == BOB
    assert world.repo.task_assignments[world.row_bob]["user_id"] == ALICE


async def test_swap_input_errors(services, session_for, world):
    async with _client() as c:
        self_swap = await c.post("/api/swaps", json=_swap_payload(world, targetId=ALICE), headers=session_for(ALICE))
        bad_kind = await c.get(f"/api/swaps/eligible-targets/{world.task_alice}/lecture", headers=session_for(ALICE))
        unknown = await c.get("/api/swaps/eligible-targets/9999/exam", headers=session_for(ALICE))
        malformed = await c.post("/api/swaps", json={"targetId": [1, 2]}, headers=session_for(ALICE))
        by_dean = await c.post("/api/swaps", json=_swap_payload(world), headers=session_for(DANA))
    assert self_swap.status_code == 400
    assert self_swap.json()["detail"] == "self_swap"
    assert bad_kind.status_code == 400
    assert unknown.status_code == 200 and unknown.json() == []
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "bad_request"
    assert by_dean.status_code == 403


async def test_swap_delete_and_statistics(services, session_for, world):
    async with _client() as c:
        swap = (await c.post("/api/swaps", json=_swap_payload(world), headers=session_for(ALICE))).json()["swap"]
        stats = await c.get("/api/swaps/statistics", headers=session_for(IVAN))
        by_target = await c.delete(f"/api/swaps/{swap['id']}", headers=session_for(BOB))
        by_owner = await c.delete(f"/api/swaps/{swap['id']}", headers=session_for(ALICE))
        missing = await c.delete(f"/api/swaps/{swap['id']}", headers=session_for(ALICE))
    assert stats.json()["pending"] == 1
    assert by_target.status_code == 403
    assert by_owner.status_code == 200
    assert missing.status_code == 404


async def test_notification_owner_endpoints(services, session_for, world):
    notifier = services.notifier
    first = notifier.send_to_user(ALICE, "info", "Room change", "Lab moved to B12")
    notifier.send_to_user(ALICE, "info", "Reminder", "Grades due Friday")
    foreign = notifier.send_to_user(BOB, "info", "Hi", "Private")
    async with _client() as c:
        count = await c.get("/api/notifications/unread-count", headers=session_for(ALICE))
        read = await c.patch(f"/api/notifications/{first['id']}/read", headers=session_for(ALICE))
        steal = await c.patch(f"/api/notifications/{foreign['id']}/read", headers=session_for(ALICE))
        unread = await c.get("/api/notifications", params={"unread_only": "true"}, headers=session_for(ALICE))
        all_read = await c.patch("/api/notifications/mark-all-read", headers=session_for(ALICE))
        wipe = await c.delete("/api/notifications/delete-all", headers=session_for(ALICE))
        missing = await c.delete(f"/api/notifications/{first['id']}", headers=session_for(ALICE))
    assert count.json() == {"unreadCount": 2}
    assert read.status_code == 200
    assert steal.status_code == 403
    assert [n["title"] for n in unread.json()["notifications"]] == ["Reminder"]
    assert all_read.json()["count"] == 1
    assert wipe.json()["count"] == 2
    assert missing.status_code == 404


async def test_sending_notifications_needs_system_settings(services, session_for, world):
    body = {"userId": BOB, "type": "info", "title": "Welcome", "message": "Hello"}
    async with _client() as c:
        denied = await c.post("/api/notifications", json=body, headers=session_for(IVAN))
        sent = await c.post("/api/notifications", json=body, headers=session_for(ADA))
        bulk = await c.post(
            "/api/notifications/bulk",
            json={"userIds": [ALICE, BOB], "type": "info", "title": "Heads up", "message": "Office hours"},
            headers=session_for(ADA),
        )
        announce = await c.post(
            "/api/notifications/announcements",
            json={"title": "Maintenance", "message": "Tonight", "roles": ["teaching_assistant"]},
            headers=session_for(ADA),
        )
        incomplete = await c.post("/api/notifications", json={"type": "info"}, headers=session_for(ADA))
    assert denied.status_code == 403
    assert sent.status_code == 201
    assert bulk.json()["count"] == 2
    assert announce.json()["count"] == 4
    assert incomplete.status_code == 400
    assert any(e["action"] == "create_notification" for e in world.repo.audit_entries)


async def test_audit_endpoints_require_view_audit_logs(services, session_for, world):
    async with _client() as c:
        await c.post(
            "/api/leaves",
            json={"leaveType": "personal", "startDate": "2025-06-01", "endDate": "2025-06-01", "reason": "Moving"},
            headers=session_for(ALICE),
        )
        ta = await c.get("/api/audit-logs", headers=session_for(ALICE))
        instructor = await c.get("/api/audit-logs", headers=session_for(IVAN))
        logs = await c.get("/api/audit-logs", params={"entity": "leave_request"}, headers=session_for(DANA))
        by_user = await c.get(f"/api/audit-logs/user/{ALICE}", headers=session_for(CHEN))
        by_action = await c.get("/api/audit-logs/action/authorization_failure", headers=session_for(ADA))
        stats = await c.get("/api/audit-logs/stats", headers=session_for(ADA))
        bad_order = await c.get("/api/audit-logs", params={"order": "sideways"}, headers=session_for(ADA))
    assert ta.status_code == 403
    assert instructor.status_code == 403
    assert [e["action"] for e in logs.json()] == ["create_leave_request"]
    assert logs.json()[0]["metadata"]["outcome"] == "success"
    assert all(e["user_id"] == str(ALICE) for e in by_user.json())
    assert len(by_action.json()) == 2
    assert stats.json()["by_action"]["create_leave_request"] == 1
    assert bad_order.status_code == 400
