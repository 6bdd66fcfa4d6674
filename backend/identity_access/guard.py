"""
Authorization guard: per-request Allow/Deny decisions with an audit record.

Why:
    Every mutating action passes through one place that (1) requires an
    authenticated identity, (2) requires a known role and (3) checks the
    action's guards. Keeping this out of the routes lets the workflow services
    and tests use the same checks without FastAPI.

Design:
    A guard is a small callable returning `GuardResult.proceed()` or
    `GuardResult.reject(reason)`. Callers compose an ordered pipeline:

        guard.enforce(identity, require_permission(Permission.VIEW_AUDIT_LOGS))

    Two strategies exist: `require_permission` (ANY-of the given permissions)
    and the legacy `require_role` allow-list. Each `run`/`enforce` call writes
    exactly one audit entry, Allow or Deny, before returning.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Protocol, Tuple

from backend.workflow.audit import AuditTrail, RequestContext
from backend.workflow.errors import AuthenticationError, AuthorizationError

from .domain import REGISTRY, Permission, PermissionRegistry, Role, parse_role

INVALID_ROLE = "invalid role"
INSUFFICIENT_PERMISSIONS = "insufficient permissions"


@dataclass(frozen=True)
class Identity:
    """The authenticated caller. Permissions are derived once per request."""

    user_id: int
    role: Optional[Role]
    name: str = ""
    raw_role: str = ""
    permissions: FrozenSet[Permission] = field(default_factory=frozenset)

    @classmethod
    def resolve(
        cls,
        user_id: int,
        role: object,
        *,
        name: str = "",
        registry: PermissionRegistry = REGISTRY,
    ) -> "Identity":
        parsed = parse_role(role)
        raw = role.value if isinstance(role, Role) else str(role or "")
        return cls(
            user_id=user_id,
            role=parsed,
            name=name,
            raw_role=raw,
            permissions=registry.permissions_for(parsed),
        )

    def can(self, *permissions: Permission) -> bool:
        return any(p in self.permissions for p in permissions)


@dataclass(frozen=True)
class GuardResult:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def proceed(cls) -> "GuardResult":
        return cls(True, None)

    @classmethod
    def reject(cls, reason: str) -> "GuardResult":
        return cls(False, reason)


# Alias used by callers that think in terms of the final decision.
GuardDecision = GuardResult


class Guard(Protocol):
    def __call__(self, identity: Identity, registry: PermissionRegistry) -> GuardResult:
        ...

    def audit_metadata(self) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class PermissionGuard:
    permissions: Tuple[Permission, ...]

    def __call__(self, identity: Identity, registry: PermissionRegistry) -> GuardResult:
        held = registry.permissions_for(identity.role)
        if any(p in held for p in self.permissions):
            return GuardResult.proceed()
        return GuardResult.reject(INSUFFICIENT_PERMISSIONS)

    def audit_metadata(self) -> Dict[str, Any]:
        return {"requiredPermissions": [p.value for p in self.permissions]}


@dataclass(frozen=True)
class RoleGuard:
    roles: Tuple[Role, ...]

    def __call__(self, identity: Identity, registry: PermissionRegistry) -> GuardResult:
        if identity.role in self.roles:
            return GuardResult.proceed()
        return GuardResult.reject(INSUFFICIENT_PERMISSIONS)

    def audit_metadata(self) -> Dict[str, Any]:
        return {"allowedRoles": [r.value for r in self.roles]}


def require_permission(*permissions: Permission) -> PermissionGuard:
    """Allow when the caller's role holds ANY of `permissions`."""
    if not permissions:
        raise ValueError("at least one permission is required")
    return PermissionGuard(tuple(permissions))


def require_role(*roles: Role) -> RoleGuard:
    """Legacy strategy: allow when the caller's role is in the allow-list."""
    if not roles:
        raise ValueError("at least one role is required")
    return RoleGuard(tuple(roles))


class AuthorizationGuard:
    def __init__(self, audit: AuditTrail, registry: PermissionRegistry = REGISTRY) -> None:
        self._audit = audit
        self._registry = registry

    @property
    def registry(self) -> PermissionRegistry:
        return self._registry

    def run(
        self,
        identity: Optional[Identity],
        *guards: Guard,
        context: Optional[RequestContext] = None,
    ) -> GuardResult:
        """Evaluate `guards` in order; the first rejection wins.

        Raises AuthenticationError when no identity is present. Otherwise
        returns the decision after writing one audit entry.
        """
        if identity is None:
            self._audit.record(
                action="authentication_failure",
                entity="user",
                description="Authentication required",
                metadata=self._request_metadata(context),
                context=context,
            )
            raise AuthenticationError("authentication_required")

        metadata: Dict[str, Any] = {"userRole": identity.raw_role or "unknown"}
        for g in guards:
            metadata.update(g.audit_metadata())
        metadata.update(self._request_metadata(context))

        if not self._registry.role_exists(identity.role):
            decision = GuardResult.reject(INVALID_ROLE)
        else:
            decision = GuardResult.proceed()
            for g in guards:
                result = g(identity, self._registry)
                if not result.allowed:
                    decision = result
                    break

        if decision.allowed:
            self._audit.record(
                action="authorization_success",
                entity="user",
                entity_id=identity.user_id,
                user_id=identity.user_id,
                description=self._describe_success(context),
                metadata=metadata,
                context=context,
            )
        else:
            metadata["reason"] = decision.reason
            self._audit.record(
                action="authorization_failure",
                entity="user",
                entity_id=identity.user_id,
                user_id=identity.user_id,
                description=f"Authorization failed: {decision.reason}",
                metadata=metadata,
                context=context,
            )
        return decision

    def enforce(
        self,
        identity: Optional[Identity],
        *guards: Guard,
        context: Optional[RequestContext] = None,
    ) -> Identity:
        """Like `run`, but raise AuthorizationError on Deny and return the identity."""
        decision = self.run(identity, *guards, context=context)
        if not decision.allowed:
            raise AuthorizationError(decision.reason or INSUFFICIENT_PERMISSIONS)
        assert identity is not None
        return identity

    @staticmethod
    def _request_metadata(context: Optional[RequestContext]) -> Dict[str, Any]:
        if context is None:
            return {}
        meta: Dict[str, Any] = {}
        if context.path:
            meta["path"] = context.path
        if context.method:
            meta["method"] = context.method
        return meta

    @staticmethod
    def _describe_success(context: Optional[RequestContext]) -> str:
        if context and context.method and context.path:
            return f"User authorized for {context.method} {context.path}"
        return "User authorized"


__all__ = [
    "AuthorizationGuard",
    "Guard",
    "GuardDecision",
    "GuardResult",
    "INSUFFICIENT_PERMISSIONS",
    "INVALID_ROLE",
    "Identity",
    "PermissionGuard",
    "RoleGuard",
    "require_permission",
    "require_role",
]
