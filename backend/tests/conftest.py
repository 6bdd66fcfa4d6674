"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors).
Every test starts with a fresh, seeded in-memory repository and clean
process-wide wiring, so no state leaks between cases.
"""
import os
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path

import pytest

# Ensure the repository root is importable (the `backend` package lives there)
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from backend.identity_access.guard import Identity  # noqa: E402
from backend.workflow.audit import AuditTrail  # noqa: E402
from backend.workflow.notifications import NotificationDispatcher  # noqa: E402
from backend.workflow.repo_memory import InMemoryWorkflowRepo  # noqa: E402

# Seeded user ids (stable across tests)
ALICE, BOB, CAROL, DAVE, ERIN = 1, 2, 3, 4, 5
IVAN = 10  # instructor
ADA = 20  # admin
CHEN = 30  # department chair
DANA = 40  # dean

COURSE = 101
OTHER_COURSE = 202
EXAM_DAY = "2025-06-20"


@dataclass
class World:
    """Seed ids for the default course layout."""

    repo: InMemoryWorkflowRepo
    task_alice: int
    task_bob: int
    task_carol: int
    row_alice: int
    row_bob: int
    exam: int
    proctor_alice: int
    proctor_bob: int
    row_proctor_alice: int
    row_proctor_bob: int


def seed(repo: InMemoryWorkflowRepo) -> World:
    repo.add_user(ALICE, "Alice Adams")
    repo.add_user(BOB, "Bob Brown")
    repo.add_user(CAROL, "Carol Chu")
    repo.add_user(DAVE, "Dave Dorn", status="inactive")
    repo.add_user(ERIN, "Erin Eze")
    repo.add_user(IVAN, "Ivan Ito", "instructor")
    repo.add_user(ADA, "Ada Admin", "admin")
    repo.add_user(CHEN, "Chen Chair", "department_chair")
    repo.add_user(DANA, "Dana Dean", "dean")

    t_alice = repo.add_task(COURSE, "Grade HW1", due_date="2025-06-15")
    t_bob = repo.add_task(COURSE, "Grade HW2", due_date="2025-06-22")
    t_carol = repo.add_task(COURSE, "Grade Lab 1", due_date="2025-06-15")
    t_ivan = repo.add_task(COURSE, "Prepare slides", due_date="2025-06-15")
    t_dave = repo.add_task(COURSE, "Grade Lab 2", due_date="2025-06-15")
    t_erin = repo.add_task(COURSE, "Grade Quiz", due_date="2025-06-15")
    t_other = repo.add_task(OTHER_COURSE, "Grade Essay", due_date="2025-06-15")

    row_alice = repo.assign_task(t_alice["id"], ALICE)
    row_bob = repo.assign_task(t_bob["id"], BOB)
    repo.assign_task(t_carol["id"], CAROL)
    repo.assign_task(t_ivan["id"], IVAN)
    repo.assign_task(t_dave["id"], DAVE)
    repo.assign_task(t_erin["id"], ERIN)
    repo.assign_task(t_other["id"], 6)

    exam = repo.add_exam(COURSE, "Midterm", EXAM_DAY)
    p_alice = repo.add_task(COURSE, "Proctor Midterm (room A)", task_type="proctoring", due_date=EXAM_DAY)
    p_bob = repo.add_task(COURSE, "Proctor Midterm (room B)", task_type="proctoring", due_date=EXAM_DAY)
    rp_alice = repo.assign_task(p_alice["id"], ALICE)
    rp_bob = repo.assign_task(p_bob["id"], BOB)

    return World(
        repo=repo,
        task_alice=t_alice["id"],
        task_bob=t_bob["id"],
        task_carol=t_carol["id"],
        row_alice=row_alice["id"],
        row_bob=row_bob["id"],
        exam=exam["id"],
        proctor_alice=p_alice["id"],
        proctor_bob=p_bob["id"],
        row_proctor_alice=rp_alice["id"],
        row_proctor_bob=rp_bob["id"],
    )


ROLES = {
    ALICE: "teaching_assistant",
    BOB: "teaching_assistant",
    CAROL: "teaching_assistant",
    DAVE: "teaching_assistant",
    ERIN: "teaching_assistant",
    IVAN: "instructor",
    ADA: "admin",
    CHEN: "department_chair",
    DANA: "dean",
}


def who(user_id: int, role: object = None) -> Identity:
    """Identity for a seeded user (role defaults to the seeded one)."""
    return Identity.resolve(user_id, role if role is not None else ROLES[user_id])


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch):
    """Clear env-driven toggles so a developer shell cannot leak into tests.

    Behavior:
        - No DSN: wiring falls back to the in-memory repository.
        - Default dev environment, default swap policy, audit enabled but quiet.
    """
    for var in (
        "TAMS_ENV",
        "TAMS_DATABASE_URL",
        "DATABASE_URL",
        "TAMS_SWAP_REVIEW_POLICY",
        "TAMS_AUDIT_ENABLED",
        "TAMS_SESSION_TTL_SECONDS",
        "TAMS_ALLOW_BACKDATED_LEAVE",
        "TAMS_TRUST_PROXY",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TAMS_AUDIT_CONSOLE", "false")
    yield


@pytest.fixture
def repo() -> InMemoryWorkflowRepo:
    return InMemoryWorkflowRepo()


@pytest.fixture
def world(repo: InMemoryWorkflowRepo) -> World:
    return seed(repo)


@pytest.fixture
def audit(repo: InMemoryWorkflowRepo) -> AuditTrail:
    return AuditTrail(repo, console_output=False)


@pytest.fixture
def notifier(repo: InMemoryWorkflowRepo) -> NotificationDispatcher:
    return NotificationDispatcher(repo, repo)


@pytest.fixture
def fixed_today():
    return lambda: date(2025, 5, 1)


@pytest.fixture
def services(world: World):
    """Process-wide wiring rebuilt around the seeded repository."""
    from backend.web import wiring

    wiring.reset()
    svc = wiring.set_repo(world.repo)
    yield svc
    wiring.reset()


@pytest.fixture
def session_for():
    """Create a session for a seeded user and return bearer headers."""
    from backend.web import wiring

    def _make(user_id: int, role: object = None) -> dict:
        rec = wiring.SESSION_STORE.create(
            sub=user_id, role=role if role is not None else ROLES.get(user_id, ""), name=f"user-{user_id}"
        )
        return {"Authorization": f"Bearer {rec.session_id}"}

    return _make


@pytest.fixture
def db_dsn():
    """DSN of a reachable test database, or skip."""
    dsn = os.getenv("TAMS_TEST_DSN")
    if not dsn:
        pytest.skip("TAMS_TEST_DSN not set; skipping live database test")
    try:
        import psycopg  # type: ignore
    except Exception:
        pytest.skip("psycopg not installed")
    try:
        with psycopg.connect(dsn, connect_timeout=3):
            pass
    except Exception:
        pytest.skip("test database unreachable")
    return dsn
