"""
Leave workflow: validation, reviewer rules, exactly-once decisions and the
audit/notification side effects.
"""
from __future__ import annotations

import threading
from datetime import date

import pytest

from backend.workflow.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from backend.workflow.services import LeaveWorkflow
from backend.workflow.services.leaves import leave_duration

from conftest import ADA, ALICE, BOB, CHEN, DANA, IVAN, who


@pytest.fixture
def leaves(repo, world, audit, notifier, fixed_today):
    return LeaveWorkflow(repo, audit, notifier, today=fixed_today)


def _create(leaves, user_id=ALICE, **overrides):
    payload = dict(leave_type="conference", start_date="2025-06-01", end_date="2025-06-03", reason="conference")
    payload.update(overrides)
    return leaves.create(who(user_id), **payload)


def test_create_then_approve_notifies_the_requester(leaves, repo):
    leave = _create(leaves)
    assert leave["status"] == "pending"
    assert leave["duration"] == 3
    assert leave["user_name"] == "Alice Adams"

    decided = leaves.decide(leave["id"], who(IVAN), "approved", "Enjoy the talk")
    assert decided["status"] == "approved"
    assert decided["reviewer_id"] == IVAN
    assert decided["reviewer_name"] == "Ivan Ito"
    assert decided["reviewer_notes"] == "Enjoy the talk"
    assert decided["reviewed_at"]

    notes = [n for n in repo.notifications.values() if n["user_id"] == ALICE]
    assert len(notes) == 1
    assert notes[0]["type"] == "leave_status"
    assert notes[0]["message"] == "Your leave request from 6/1/2025 to 6/3/2025 has been approved."

    actions = [e["action"] for e in repo.audit_entries]
    assert actions == ["create_leave_request", "update_status_leave_request"]
    assert all(e["metadata"]["outcome"] == "success" for e in repo.audit_entries)


def test_teaching_assistant_cannot_decide(leaves, repo):
    leave = _create(leaves)
    with pytest.raises(AuthorizationError) as excinfo:
        leaves.decide(leave["id"], who(BOB), "approved")
    assert excinfo.value.reason == "not_a_reviewer"
    assert repo.get_leave(leave["id"])["status"] == "pending"
    failure = repo.audit_entries[-1]
    assert failure["action"] == "update_status_leave_request"
    assert failure["metadata"]["outcome"] == "failure"
    assert failure["metadata"]["error"] == "forbidden"


def test_dean_can_read_but_not_decide(leaves):
    leave = _create(leaves)
    assert leaves.get(leave["id"], who(DANA))["id"] == leave["id"]
    with pytest.raises(AuthorizationError):
        leaves.decide(leave["id"], who(DANA), "rejected")


def test_second_decision_conflicts(leaves, repo):
    leave = _create(leaves)
    leaves.decide(leave["id"], who(IVAN), "rejected")
    with pytest.raises(ConflictError) as excinfo:
        leaves.decide(leave["id"], who(CHEN), "approved")
    assert excinfo.value.extra == {"status": "rejected"}
    assert repo.get_leave(leave["id"])["status"] == "rejected"
    assert len([n for n in repo.notifications.values() if n["user_id"] == ALICE]) == 1


def test_concurrent_decisions_have_one_winner(leaves, repo):
    leave = _create(leaves)
    barrier = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def decide(reviewer, status):
        barrier.wait()
        try:
            leaves.decide(leave["id"], reviewer, status)
            result = "ok"
        except ConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    reviewers = [(who(IVAN), "approved"), (who(CHEN), "rejected"), (who(ADA), "approved"), (who(IVAN), "rejected")]
    threads = [threading.Thread(target=decide, args=args) for args in reviewers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["conflict", "conflict", "conflict", "ok"]
    assert len([n for n in repo.notifications.values() if n["user_id"] == ALICE]) == 1
    decisions = [e for e in repo.audit_entries if e["action"] == "update_status_leave_request"]
    assert len(decisions) == 4
    assert sum(1 for e in decisions if e["metadata"]["outcome"] == "success") == 1


@pytest.mark.parametrize(
    "overrides,reason",
    [
        ({"leave_type": "vacation"}, "invalid_leave_type"),
        ({"leave_type": None}, "missing_required_fields"),
        ({"start_date": "2025-06-05", "end_date": "2025-06-01"}, "invalid_date_range"),
        ({"start_date": "06/01/2025"}, "invalid_date_format"),
        ({"reason": "   "}, "missing_required_fields"),
        ({"reason": "x" * 2001}, "invalid_reason"),
    ],
)
def test_create_validation(leaves, repo, overrides, reason):
    with pytest.raises(ValidationError) as excinfo:
        _create(leaves, **overrides)
    assert excinfo.value.reason == reason
    assert repo.leaves == {}
    assert [e["metadata"]["outcome"] for e in repo.audit_entries] == ["failure"]


def test_single_day_leave_and_type_normalization(leaves):
    leave = _create(leaves, leave_type=" Medical ", start_date="2025-06-10", end_date="2025-06-10")
    assert leave["leave_type"] == "medical"
    assert leave["duration"] == 1
    assert leave_duration(date(2025, 6, 1), date(2025, 6, 30)) == 30


def test_backdating_rules(repo, world, audit, notifier, fixed_today):
    strict = LeaveWorkflow(repo, audit, notifier, today=fixed_today, allow_backdated=False)
    with pytest.raises(ValidationError) as excinfo:
        _create(strict, start_date="2025-04-01", end_date="2025-04-02")
    assert excinfo.value.reason == "past_dates_not_allowed"
    assert _create(strict, user_id=ADA, start_date="2025-04-01", end_date="2025-04-02")["status"] == "pending"

    lenient = LeaveWorkflow(repo, audit, notifier, today=fixed_today)
    assert _create(lenient, start_date="2025-04-01", end_date="2025-04-02")["status"] == "pending"


def test_invalid_decision_value(leaves):
    leave = _create(leaves)
    for value in ("pending", "maybe", None):
        with pytest.raises(ValidationError) as excinfo:
            leaves.decide(leave["id"], who(IVAN), value)
        assert excinfo.value.reason == "invalid_status"


def test_unknown_leave(leaves):
    with pytest.raises(NotFoundError):
        leaves.decide(999, who(IVAN), "approved")
    with pytest.raises(NotFoundError):
        leaves.delete(999, who(ALICE))
    with pytest.raises(ValidationError):
        leaves.get("abc", who(ALICE))


def test_delete_rules(leaves, repo):
    mine = _create(leaves)
    with pytest.raises(AuthorizationError):
        leaves.delete(mine["id"], who(BOB))
    leaves.delete(mine["id"], who(ALICE))
    assert repo.get_leave(mine["id"]) is None

    decided = _create(leaves)
    leaves.decide(decided["id"], who(IVAN), "approved")
    with pytest.raises(ConflictError):
        leaves.delete(decided["id"], who(ALICE))

    # Admin holds delete_application and may remove anyone's pending request.
    other = _create(leaves, user_id=BOB)
    leaves.delete(other["id"], who(ADA))


def test_concurrent_deletes_have_one_winner(leaves, repo, monkeypatch):
    leave = _create(leaves)
    # Both callers pass the read-side checks before either delete lands.
    barrier = threading.Barrier(2, timeout=5)
    conditional_delete = repo.delete_leave_if_pending

    def delete_after_barrier(leave_id):
        barrier.wait()
        return conditional_delete(leave_id)

    monkeypatch.setattr(repo, "delete_leave_if_pending", delete_after_barrier)
    outcomes = []
    lock = threading.Lock()

    def delete(caller):
        try:
            leaves.delete(leave["id"], caller)
            result = "ok"
        except ConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=delete, args=(caller,)) for caller in (who(ALICE), who(ADA))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["conflict", "ok"]
    assert repo.get_leave(leave["id"]) is None
    deletes = [e for e in repo.audit_entries if e["action"] == "delete_leave_request"]
    assert sorted(e["metadata"]["outcome"] for e in deletes) == ["failure", "success"]

    deletes = [e for e in repo.audit_entries if e["action"] == "delete_leave_request"]
    assert [e["metadata"]["outcome"] for e in deletes] == ["failure", "success", "failure", "success"]


def test_read_scopes(leaves):
    a = _create(leaves)
    b = _create(leaves, user_id=BOB, leave_type="personal")
    assert [x["id"] for x in leaves.list_for(who(ALICE))] == [a["id"]]
    assert {x["id"] for x in leaves.list_for(who(IVAN))} == {a["id"], b["id"]}
    assert [x["id"] for x in leaves.list_mine(who(IVAN))] == []
    with pytest.raises(AuthorizationError):
        leaves.get(b["id"], who(ALICE))
    assert leaves.get(b["id"], who(CHEN))["leave_type"] == "personal"


def test_statistics_scope(leaves):
    a = _create(leaves)
    _create(leaves, user_id=BOB)
    leaves.decide(a["id"], who(IVAN), "approved")
    own = leaves.statistics(who(ALICE))
    assert own == {"total_requests": 1, "approved": 1, "rejected": 0, "pending": 0, "total_days_taken": 3}
    assert leaves.statistics(who(IVAN))["total_requests"] == 2


def test_conflicts_cover_tasks_and_proctored_exams(leaves, world):
    leave = _create(leaves, start_date="2025-06-14", end_date="2025-06-21")
    conflicts = leaves.conflicts_for(leave)
    assert conflicts["message"] == "Warning: You have assignments during the requested leave period"
    titles = [t["title"] for t in conflicts["taskConflicts"]]
    assert titles == ["Grade HW1", "Proctor Midterm (room A)"]
    assert [e["title"] for e in conflicts["examConflicts"]] == ["Midterm"]

    quiet = _create(leaves, start_date="2025-07-01", end_date="2025-07-02")
    assert leaves.conflicts_for(quiet) is None
