"""
Configuration and startup security checks for TAMS.

Why: A misconfigured production deployment must fail at startup, not on the
first leave decision. Development stays permissive and falls back to the
in-memory repository.

Permissions: The caller needs no special privileges. The functions read
environment variables; the guard raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional

from backend.workflow.services.swaps import SwapReviewPolicy, parse_review_policy


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    val = raw.strip().lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")


def _int_env(name: str, default: int, *, low: int, high: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < low or value > high:
        raise ValueError(f"{name} out of range ({low}..{high}), got: {value}")
    return value


def database_url() -> Optional[str]:
    return os.getenv("TAMS_DATABASE_URL") or os.getenv("DATABASE_URL") or None


@dataclass(frozen=True)
class Settings:
    env: str
    database_url: Optional[str]
    swap_review_policy: SwapReviewPolicy
    audit_enabled: bool
    audit_console: bool
    session_ttl_seconds: int
    allow_backdated_leave: bool


def load_settings() -> Settings:
    """Read settings from the environment.

    Behavior:
        - Raises ValueError on malformed values (booleans, integers, policy).
        - Missing DSN means the in-memory repository is used.
    """
    try:
        policy = parse_review_policy(os.getenv("TAMS_SWAP_REVIEW_POLICY"))
    except ValueError:
        raise ValueError("TAMS_SWAP_REVIEW_POLICY must be 'target_or_reviewer' or 'target_only'")
    return Settings(
        env=(os.getenv("TAMS_ENV") or "dev").strip().lower(),
        database_url=database_url(),
        swap_review_policy=policy,
        audit_enabled=_bool_env("TAMS_AUDIT_ENABLED", True),
        audit_console=_bool_env("TAMS_AUDIT_CONSOLE", True),
        session_ttl_seconds=_int_env("TAMS_SESSION_TTL_SECONDS", 3600, low=60, high=86400 * 7),
        allow_backdated_leave=_bool_env("TAMS_ALLOW_BACKDATED_LEAVE", True),
    )


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - A DSN must be configured (no in-memory state in production).
    - The DSN must not explicitly disable TLS.
    - The audit trail must stay enabled.
    - All settings must parse (e.g. a valid swap review policy).
    """
    env = os.getenv("TAMS_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    try:
        settings = load_settings()
    except ValueError as exc:
        raise SystemExit(f"Refusing to start: {exc}")

    if not settings.database_url:
        raise SystemExit(
            "Refusing to start: DATABASE_URL (or TAMS_DATABASE_URL) is required in production."
        )
    if "sslmode=disable" in settings.database_url:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
    if not settings.audit_enabled:
        raise SystemExit(
            "Refusing to start: TAMS_AUDIT_ENABLED=false is not allowed in production/staging."
        )
