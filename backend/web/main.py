"TAMS web adapter"
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.identity_access.domain import REGISTRY
from backend.workflow.errors import PersistenceError, ValidationError, WorkflowError

from backend.web import config as _cfg
from backend.web import wiring
from backend.web.routes.audit import audit_router
from backend.web.routes.leaves import leaves_router
from backend.web.routes.notifications import notifications_router
from backend.web.routes.security import NO_STORE, current_identity, json_private, request_context
from backend.web.routes.swaps import swaps_router


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via TAMS_ENABLE_DOTENV (default true outside pytest).
    """
    import sys
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("TAMS_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


from dotenv import load_dotenv

if _should_load_dotenv():
    load_dotenv()

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

logger = logging.getLogger("tams.web")
SESSION_COOKIE_NAME = "tams_session"
SESSION_STORE = wiring.SESSION_STORE

app = FastAPI(title="TAMS", description="TA management: leave and swap workflows", version="0.1.0")


# --- Auth Middleware ------------------------------------------------------------

def _is_public_path(path: str) -> bool:
    return path in ("/health", "/favicon.ico", "/openapi.json") or path.startswith("/docs")


def _session_id_from(request: Request) -> tuple[str | None, str | None]:
    """Return (session id, transport) from the bearer header or the session cookie."""
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip(), "bearer"
    sid = request.cookies.get(SESSION_COOKIE_NAME)
    if sid:
        return sid, "cookie"
    return None, None


@app.middleware("http")
async def resolve_session(request: Request, call_next):
    """Resolve the caller; the guard in each route decides what a missing caller means."""
    request.state.user = None
    request.state.auth_via = None
    if _is_public_path(request.url.path):
        return await call_next(request)

    sid, via = _session_id_from(request)
    rec = None
    if sid:
        try:
            rec = SESSION_STORE.get(sid)
        except Exception as exc:
            logger.warning("Session store get failed: %s", exc.__class__.__name__)
    if rec:
        # Expose minimal, read-only user context for downstream handlers.
        request.state.user = {"sub": rec.sub, "role": rec.role, "name": rec.name}
        request.state.auth_via = via
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


# --- Error Mapping --------------------------------------------------------------

@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    """Map the error taxonomy to stable JSON: `{"error": code, "detail": reason}`."""
    if isinstance(exc, PersistenceError) or exc.status_code >= 500:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc.code, exc_info=exc)
        wiring.get_services().audit.log_error(
            request.url.path, exc, getattr(request.state, "user", None) and request.state.user["sub"],
            "Request failed", request_context(request),
        )
        return JSONResponse({"error": "server_error"}, status_code=500, headers=dict(NO_STORE))
    payload = {"error": exc.code, "detail": exc.reason or None}
    if isinstance(exc, ValidationError) and exc.fields:
        payload["fields"] = exc.fields
    for key, value in exc.extra.items():
        payload.setdefault(key, value)
    return JSONResponse(payload, status_code=exc.status_code, headers=dict(NO_STORE))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "server_error"}, status_code=500, headers=dict(NO_STORE))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        fields[".".join(loc) or "body"] = err.get("msg", "invalid")
    return JSONResponse(
        {"error": "bad_request", "detail": "invalid_input", "fields": fields},
        status_code=400,
        headers=dict(NO_STORE),
    )


# --- Routes ---------------------------------------------------------------------

app.include_router(leaves_router)
app.include_router(swaps_router)
app.include_router(notifications_router)
app.include_router(audit_router)


@app.get("/health")
async def health_check():
    # Security: include no-store to avoid caching any runtime status.
    return JSONResponse({"status": "healthy"}, headers=dict(NO_STORE))


@app.get("/api/me")
async def me(request: Request):
    """The caller's identity and derived permissions (401 when unauthenticated)."""
    svc = wiring.get_services()
    caller = svc.guard.enforce(current_identity(request), context=request_context(request))
    sid, _ = _session_id_from(request)
    rec = SESSION_STORE.get(sid) if sid else None
    exp_iso = (
        datetime.fromtimestamp(rec.expires_at, tz=timezone.utc).isoformat(timespec="seconds")
        if rec and rec.expires_at
        else None
    )
    return json_private(
        {
            "sub": caller.user_id,
            "role": caller.role.value if caller.role else caller.raw_role,
            "name": caller.name,
            "permissions": sorted(p.value for p in REGISTRY.permissions_for(caller.role)),
            "expires_at": exp_iso,
        }
    )
