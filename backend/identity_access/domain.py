"""
Identity domain: roles, permissions and the static role → permission registry.

Why:
- Centralize roles and permissions to avoid drift between routes, workflow
  services and tooling. Terms follow the glossary (Role, Permission).
- The registry is built once at import time and is read-only afterwards; it is
  the only process-wide state shared by all requests.

Fail-closed:
    Unknown roles (including raw strings that are not part of the enum) map to
    the empty permission set.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Iterable, Mapping, Optional


class Role(str, Enum):
    TEACHING_ASSISTANT = "teaching_assistant"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"
    DEPARTMENT_CHAIR = "department_chair"
    DEAN = "dean"


class Permission(str, Enum):
    # User management
    VIEW_USERS = "view_users"
    CREATE_USER = "create_user"
    UPDATE_USER = "update_user"
    DELETE_USER = "delete_user"

    # Course management
    VIEW_COURSES = "view_courses"
    CREATE_COURSE = "create_course"
    UPDATE_COURSE = "update_course"
    DELETE_COURSE = "delete_course"

    # Applications (leave and swap requests)
    VIEW_APPLICATIONS = "view_applications"
    CREATE_APPLICATION = "create_application"
    UPDATE_APPLICATION = "update_application"
    DELETE_APPLICATION = "delete_application"
    APPROVE_APPLICATION = "approve_application"
    REJECT_APPLICATION = "reject_application"

    # Assignments
    VIEW_ASSIGNMENTS = "view_assignments"
    CREATE_ASSIGNMENT = "create_assignment"
    UPDATE_ASSIGNMENT = "update_assignment"
    DELETE_ASSIGNMENT = "delete_assignment"

    # Evaluations
    VIEW_EVALUATIONS = "view_evaluations"
    CREATE_EVALUATION = "create_evaluation"
    UPDATE_EVALUATION = "update_evaluation"
    DELETE_EVALUATION = "delete_evaluation"

    VIEW_REPORTS = "view_reports"

    # System
    VIEW_AUDIT_LOGS = "view_audit_logs"
    MANAGE_SYSTEM_SETTINGS = "manage_system_settings"


# Legacy role spellings still found in older session stores and imports.
# Only the boundary (session store, HTTP adapter) consults this table.
LEGACY_ROLE_ALIASES: Mapping[str, Role] = MappingProxyType(
    {
        "ta": Role.TEACHING_ASSISTANT,
        "staff": Role.INSTRUCTOR,
    }
)

P = Permission

_ROLE_PERMISSIONS_TABLE: dict[Role, FrozenSet[Permission]] = {
    Role.TEACHING_ASSISTANT: frozenset(
        {
            P.VIEW_USERS,
            P.VIEW_COURSES,
            P.VIEW_APPLICATIONS,
            P.CREATE_APPLICATION,
            P.UPDATE_APPLICATION,
            P.VIEW_ASSIGNMENTS,
            P.VIEW_EVALUATIONS,
        }
    ),
    Role.INSTRUCTOR: frozenset(
        {
            P.VIEW_USERS,
            P.VIEW_COURSES,
            P.VIEW_APPLICATIONS,
            P.APPROVE_APPLICATION,
            P.REJECT_APPLICATION,
            P.VIEW_ASSIGNMENTS,
            P.CREATE_ASSIGNMENT,
            P.UPDATE_ASSIGNMENT,
            P.DELETE_ASSIGNMENT,
            P.VIEW_EVALUATIONS,
            P.CREATE_EVALUATION,
            P.UPDATE_EVALUATION,
            P.DELETE_EVALUATION,
            P.VIEW_REPORTS,
        }
    ),
    Role.ADMIN: frozenset(set(Permission) - {P.VIEW_REPORTS}),
    Role.DEPARTMENT_CHAIR: frozenset(
        {
            P.VIEW_USERS,
            P.VIEW_COURSES,
            P.CREATE_COURSE,
            P.UPDATE_COURSE,
            P.VIEW_APPLICATIONS,
            P.APPROVE_APPLICATION,
            P.REJECT_APPLICATION,
            P.VIEW_ASSIGNMENTS,
            P.VIEW_EVALUATIONS,
            P.VIEW_AUDIT_LOGS,
        }
    ),
    Role.DEAN: frozenset(
        {
            P.VIEW_USERS,
            P.VIEW_COURSES,
            P.VIEW_APPLICATIONS,
            P.VIEW_ASSIGNMENTS,
            P.VIEW_EVALUATIONS,
            P.VIEW_AUDIT_LOGS,
        }
    ),
}

# Every role must have an entry, even if empty.
assert set(_ROLE_PERMISSIONS_TABLE) == set(Role), "role table is not exhaustive"

_EMPTY: FrozenSet[Permission] = frozenset()


def parse_role(value: object) -> Optional[Role]:
    """Normalize a raw role value (enum, canonical or legacy string) to `Role`.

    Returns None for anything unknown; callers treat that as "no role".
    """
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip().lower()
    if raw in LEGACY_ROLE_ALIASES:
        return LEGACY_ROLE_ALIASES[raw]
    try:
        return Role(raw)
    except ValueError:
        return None


class PermissionRegistry:
    """Immutable mapping from role to the permissions it holds."""

    def __init__(self, table: Mapping[Role, Iterable[Permission]]) -> None:
        self._table: Mapping[Role, FrozenSet[Permission]] = MappingProxyType(
            {role: frozenset(perms) for role, perms in table.items()}
        )

    def permissions_for(self, role: object) -> FrozenSet[Permission]:
        if not isinstance(role, Role):
            return _EMPTY
        return self._table.get(role, _EMPTY)

    def role_exists(self, role: object) -> bool:
        return isinstance(role, Role) and role in self._table

    def has_permission(self, role: object, permission: Permission) -> bool:
        return permission in self.permissions_for(role)

    def roles_with(self, permission: Permission) -> FrozenSet[Role]:
        return frozenset(role for role, perms in self._table.items() if permission in perms)


REGISTRY = PermissionRegistry(_ROLE_PERMISSIONS_TABLE)

ALLOWED_ROLES = frozenset(role.value for role in Role)

__all__ = [
    "ALLOWED_ROLES",
    "LEGACY_ROLE_ALIASES",
    "Permission",
    "PermissionRegistry",
    "REGISTRY",
    "Role",
    "parse_role",
]
