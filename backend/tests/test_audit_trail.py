"""
Audit trail: fire-and-forget writes, structured search and statistics.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backend.workflow.audit import AuditTrail, RequestContext


def test_record_never_raises_when_the_store_fails(repo, monkeypatch, caplog):
    def boom(entry):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(repo, "append_audit", boom)
    trail = AuditTrail(repo, console_output=False)
    with caplog.at_level("ERROR", logger="tams.audit"):
        assert trail.log_system("startup", "Service started") is None
    assert "Audit write failed" in caplog.text


def test_disabled_trail_writes_nothing(repo):
    trail = AuditTrail(repo, enabled=False)
    assert trail.log_auth("login", 1, "User logged in") is None
    assert repo.audit_entries == []


def test_modification_entries_combine_action_and_entity(audit, repo):
    ctx = RequestContext(ip_address="192.0.2.1", user_agent="curl/8")
    entry = audit.log_modification("leave_request", 7, "create", 1, "Created leave", {"duration": 3}, ctx)
    assert entry["action"] == "create_leave_request"
    assert entry["entity_id"] == "7"
    assert entry["user_id"] == "1"
    assert entry["metadata"] == {"duration": 3}
    assert entry["ip_address"] == "192.0.2.1"
    assert entry["user_agent"] == "curl/8"


def test_system_and_error_entries(audit, repo):
    audit.log_system("maintenance", "Nightly cleanup")
    audit.log_error("leave_request", ValueError("bad date"), 3, "Create failed")
    system, error = repo.audit_entries
    assert system["entity"] == system["entity_id"] == system["user_id"] == "system"
    assert error["action"] == "error"
    assert error["metadata"] == {"error": {"name": "ValueError", "message": "bad date"}}


def test_missing_caller_is_recorded_as_anonymous(audit, repo):
    audit.log_auth("authorization_failure", None, "No session")
    audit.log_modification("swap_request", 4, "delete", None, "Deleted swap")
    audit.log_error("leave_request", RuntimeError("boom"))
    assert [e["user_id"] for e in repo.audit_entries] == ["anonymous"] * 3
    assert repo.audit_entries[0]["entity_id"] == "anonymous"


def test_console_output_goes_to_the_audit_logger(repo, caplog):
    trail = AuditTrail(repo, console_output=True)
    with caplog.at_level("INFO", logger="tams.audit"):
        trail.log_auth("login", 5, "User logged in")
    assert "[AUDIT]" in caplog.text
    assert "login" in caplog.text


@pytest.fixture
def filled(repo):
    stamps = iter(
        datetime(2025, 6, d, 12, 0, tzinfo=timezone.utc) for d in (1, 2, 3, 4, 5)
    )
    trail = AuditTrail(repo, console_output=False, clock=lambda: next(stamps))
    trail.log_modification("leave_request", 1, "create", 1, "Created leave request")
    trail.log_modification("leave_request", 1, "update_status", 10, "Leave request 1 approved")
    trail.log_modification("swap_request", 2, "create", 1, "Requested task swap with user 2")
    trail.log_auth("authorization_failure", 2, "Authorization failed: insufficient permissions")
    trail.log_modification("swap_request", 2, "update_status", 2, "Swap request 2 approved")
    return trail


def test_search_filters_and_orders_newest_first(filled):
    rows = filled.search({"entity": "leave_request"})
    assert [r["action"] for r in rows] == ["update_status_leave_request", "create_leave_request"]
    rows = filled.search({"user_id": 1}, newest_first=False)
    assert [r["entity"] for r in rows] == ["leave_request", "swap_request"]


def test_search_description_is_case_insensitive_substring(filled):
    rows = filled.search({"description": "APPROVED"})
    assert {r["entity"] for r in rows} == {"leave_request", "swap_request"}


def test_search_date_range_is_inclusive_by_day(filled):
    rows = filled.search({"start_date": "2025-06-02", "end_date": "2025-06-03"})
    assert len(rows) == 2


def test_search_pagination_is_clamped(filled):
    assert len(filled.search(limit=2)) == 2
    assert len(filled.search(limit=2, offset=4)) == 1
    assert len(filled.search(limit=0)) == 1
    assert len(filled.search(limit="nonsense")) == 5
    assert len(filled.search(offset=-3)) == 5


def test_find_helpers(filled):
    assert len(filled.find_by_entity("swap_request", 2)) == 2
    assert len(filled.find_by_user(10)) == 1
    assert len(filled.find_by_action("authorization_failure")) == 1


def test_statistics(filled):
    stats = filled.statistics()
    assert stats["total"] == 5
    assert stats["by_entity"] == {"leave_request": 2, "swap_request": 2, "user": 1}
    assert stats["by_action"]["create_swap_request"] == 1
    assert stats["by_day"]["2025-06-01"] == 1
