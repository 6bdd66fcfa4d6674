"""
Process-wide service wiring for the web adapter.

Why:
    The audit trail, notification dispatcher, guard and workflow services are
    constructed once, explicitly, around one repository. Routes fetch them via
    `get_services()`; tests swap the repository with `set_repo()` and get a
    fresh, fully rewired set.

Behavior:
    - With a DSN and psycopg available, `DBWorkflowRepo` is used; otherwise the
      in-memory repository (dev/test).
    - Nothing touches the database at import time.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from backend.identity_access.domain import REGISTRY
from backend.identity_access.guard import AuthorizationGuard
from backend.identity_access.stores import SessionStore
from backend.workflow.audit import AuditTrail
from backend.workflow.eligibility import EligibilityResolver
from backend.workflow.notifications import NotificationDispatcher
from backend.workflow.ports import WorkflowRepoProtocol
from backend.workflow.repo_memory import InMemoryWorkflowRepo
from backend.workflow.services import LeaveWorkflow, SwapWorkflow

from backend.web.config import Settings, load_settings

logger = logging.getLogger("tams.web")


@dataclass
class Services:
    settings: Settings
    repo: WorkflowRepoProtocol
    audit: AuditTrail
    notifier: NotificationDispatcher
    guard: AuthorizationGuard
    leaves: LeaveWorkflow
    swaps: SwapWorkflow
    eligibility: EligibilityResolver


def _build_default_repo(settings: Settings) -> WorkflowRepoProtocol:
    """Prefer the Postgres repo when a DSN is configured; fall back to memory."""
    if not settings.database_url:
        return InMemoryWorkflowRepo()
    try:
        from backend.workflow.repo_db import DBWorkflowRepo

        return DBWorkflowRepo(settings.database_url)
    except RuntimeError as exc:  # pragma: no cover - psycopg missing
        logger.warning("Workflow repo unavailable (%s); using in-memory fallback", exc)
        return InMemoryWorkflowRepo()


def build_services(repo: Optional[WorkflowRepoProtocol] = None, settings: Optional[Settings] = None) -> Services:
    settings = settings or load_settings()
    repo = repo if repo is not None else _build_default_repo(settings)
    audit = AuditTrail(repo, enabled=settings.audit_enabled, console_output=settings.audit_console)
    notifier = NotificationDispatcher(repo, repo)
    return Services(
        settings=settings,
        repo=repo,
        audit=audit,
        notifier=notifier,
        guard=AuthorizationGuard(audit, REGISTRY),
        leaves=LeaveWorkflow(repo, audit, notifier, allow_backdated=settings.allow_backdated_leave),
        swaps=SwapWorkflow(repo, audit, notifier, policy=settings.swap_review_policy),
        eligibility=EligibilityResolver(repo),
    )


_SERVICES: Optional[Services] = None
SESSION_STORE = SessionStore()


def get_services() -> Services:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services()
        SESSION_STORE.ttl_seconds = _SERVICES.settings.session_ttl_seconds
    return _SERVICES


def set_repo(repo: WorkflowRepoProtocol, settings: Optional[Settings] = None) -> Services:
    """Allow tests to swap the repository; rebuilds every service around it."""
    global _SERVICES
    _SERVICES = build_services(repo, settings)
    return _SERVICES


def reset() -> None:
    global _SERVICES
    _SERVICES = None
    SESSION_STORE.clear()
