"""
Leave request API contract (status codes, error bodies, cache headers).
"""
from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport

from backend.web import main

from conftest import ALICE, BOB, IVAN

pytestmark = pytest.mark.anyio("asyncio")

LEAVE = {"leaveType": "conference", "startDate": "2025-06-01", "endDate": "2025-06-03", "reason": "conference"}


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test")


def _assert_private(r: httpx.Response) -> None:
    cc = r.headers.get("Cache-Control", "")
    assert "private" in cc and "no-store" in cc


async def test_health_is_public(services):
    async with _client() as c:
        r = await c.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}
    _assert_private(r)
    assert r.headers.get("X-Content-Type-Options") == "nosniff"


async def test_unauthenticated_requests_get_401_and_are_audited(services, world):
    async with _client() as c:
        r = await c.get("/api/leaves")
    assert r.status_code == 401
    assert r.json()["error"] == "unauthenticated"
    _assert_private(r)
    assert [e["action"] for e in world.repo.audit_entries] == ["authentication_failure"]


async def test_unknown_session_is_unauthenticated(services):
    async with _client() as c:
        r = await c.get("/api/leaves", headers={"Authorization": "Bearer not-a-session"})
    assert r.status_code == 401


async def test_unknown_role_is_forbidden(services, session_for):
    headers = session_for(ALICE, role="janitor")
    async with _client() as c:
        r = await c.get("/api/leaves", headers=headers)
    assert r.status_code == 403
    assert r.json() == {"error": "forbidden", "detail": "invalid role"}


async def test_create_approve_and_notify_flow(services, session_for, world):
    ta = session_for(ALICE)
    instructor = session_for(IVAN)
    async with _client() as c:
        created = await c.post("/api/leaves", json=LEAVE, headers=ta)
        assert created.status_code == 201
        body = created.json()
        assert body["message"] == "Leave request created successfully"
        assert body["leave"]["status"] == "pending"
        assert body["conflicts"] is None
        leave_id = body["leave"]["id"]

        denied = await c.put(f"/api/leaves/{leave_id}/status", json={"status": "approved"}, headers=ta)
        assert denied.status_code == 403

        approved = await c.put(
            f"/api/leaves/{leave_id}/status",
            json={"status": "approved", "reviewerNotes": "Have fun"},
            headers=instructor,
        )
        assert approved.status_code == 200
        assert approved.json()["message"] == "Leave request approved"
        assert approved.json()["leave"]["reviewer_notes"] == "Have fun"
        _assert_private(approved)

        again = await c.put(f"/api/leaves/{leave_id}/status", json={"status": "rejected"}, headers=instructor)
        assert again.status_code == 409
        assert again.json() == {"error": "conflict", "detail": "leave_not_pending", "status": "approved"}

        inbox = await c.get("/api/notifications", headers=ta)
    notes = inbox.json()["notifications"]
    assert inbox.json()["unreadCount"] == 1
    assert notes[0]["message"] == "Your leave request from 6/1/2025 to 6/3/2025 has been approved."


async def test_create_reports_assignment_conflicts(services, session_for):
    payload = dict(LEAVE, startDate="2025-06-14", endDate="2025-06-16")
    async with _client() as c:
        r = await c.post("/api/leaves", json=payload, headers=session_for(ALICE))
    assert r.status_code == 201
    conflicts = r.json()["conflicts"]
    assert [t["title"] for t in conflicts["taskConflicts"]] == ["Grade HW1"]
    assert conflicts["examConflicts"] == []


async def test_validation_errors_are_400_with_fields(services, session_for):
    async with _client() as c:
        missing = await c.post("/api/leaves", json={"leaveType": "conference"}, headers=session_for(ALICE))
        inverted = await c.post(
            "/api/leaves", json=dict(LEAVE, startDate="2025-06-09"), headers=session_for(ALICE)
        )
        bad_status = await c.put("/api/leaves/1/status", json={"status": "maybe"}, headers=session_for(IVAN))
    assert missing.status_code == 400
    assert missing.json()["error"] == "bad_request"
    assert "start_date" in missing.json()["fields"]
    assert inverted.status_code == 400
    assert inverted.json()["detail"] == "invalid_date_range"
    assert bad_status.status_code == 400
    assert bad_status.json()["detail"] == "invalid_status"


async def test_unknown_leave_is_404(services, session_for):
    async with _client() as c:
        r = await c.get("/api/leaves/999", headers=session_for(IVAN))
        d = await c.put("/api/leaves/999/status", json={"status": "approved"}, headers=session_for(IVAN))
    assert r.status_code == 404
    assert d.status_code == 404
    assert d.json()["detail"] == "leave_not_found"


async def test_list_scope_and_delete(services, session_for):
    async with _client() as c:
        mine = (await c.post("/api/leaves", json=LEAVE, headers=session_for(ALICE))).json()["leave"]
        await c.post("/api/leaves", json=LEAVE, headers=session_for(BOB))

        own = await c.get("/api/leaves", headers=session_for(ALICE))
        everything = await c.get("/api/leaves", headers=session_for(IVAN))
        stats = await c.get("/api/leaves/statistics", headers=session_for(IVAN))
        foreign = await c.delete(f"/api/leaves/{mine['id']}", headers=session_for(BOB))
        deleted = await c.delete(f"/api/leaves/{mine['id']}", headers=session_for(ALICE))
        gone = await c.get(f"/api/leaves/{mine['id']}", headers=session_for(ALICE))

    assert [x["user_id"] for x in own.json()] == [ALICE]
    assert len(everything.json()) == 2
    assert stats.json()["pending"] == 2
    assert foreign.status_code == 403
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "Leave request deleted successfully"}
    assert gone.status_code == 404


async def test_cookie_writes_require_same_origin(services, session_for):
    sid = session_for(ALICE)["Authorization"].split(" ", 1)[1]
    async with _client() as c:
        c.cookies.set(main.SESSION_COOKIE_NAME, sid)
        cross = await c.post("/api/leaves", json=LEAVE, headers={"Origin": "https://evil.example"})
        same = await c.post("/api/leaves", json=LEAVE, headers={"Origin": "http://test"})
        read = await c.get("/api/leaves/my-leaves", headers={"Origin": "https://evil.example"})
    assert cross.status_code == 403
    assert cross.json()["detail"] == "csrf_violation"
    assert same.status_code == 201
    assert read.status_code == 200


async def test_me_reports_role_and_permissions(services, session_for):
    async with _client() as c:
        r = await c.get("/api/me", headers=session_for(ALICE, role="ta"))
    body = r.json()
    assert r.status_code == 200
    assert body["sub"] == ALICE
    assert body["role"] == "teaching_assistant"
    assert "create_application" in body["permissions"]
    assert "approve_application" not in body["permissions"]
    assert body["expires_at"]
