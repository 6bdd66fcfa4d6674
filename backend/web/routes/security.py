"""
Shared web helpers for the workflow routes (identity, audit context, responses).

Keeping one implementation of "who is calling" and "how do we answer" avoids
drift between the leave, swap, notification and audit adapters.
"""
from __future__ import annotations

import os
from typing import Any, Optional
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import JSONResponse

from backend.identity_access.guard import Identity
from backend.workflow.audit import RequestContext
from backend.workflow.errors import AuthorizationError

NO_STORE = {"Cache-Control": "private, no-store"}


def json_private(payload: Any, *, status_code: int = 200) -> JSONResponse:
    """Return JSON with cache disabled; all workflow data is caller-scoped."""
    return JSONResponse(content=payload, status_code=status_code, headers=dict(NO_STORE))


def current_identity(request: Request) -> Optional[Identity]:
    """Build the per-request Identity from the session resolved by the middleware."""
    user = getattr(request.state, "user", None)
    if not user:
        return None
    return Identity.resolve(int(user["sub"]), user.get("role"), name=user.get("name") or "")


def request_context(request: Request) -> RequestContext:
    client = request.client.host if request.client else None
    trust_proxy = (os.getenv("TAMS_TRUST_PROXY", "false") or "").lower() == "true"
    if trust_proxy:
        forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
        client = forwarded or client
    return RequestContext(
        ip_address=client,
        user_agent=request.headers.get("user-agent"),
        path=request.url.path,
        method=request.method,
    )


def _origin_tuple(url: str) -> tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    port = p.port if p.port is not None else (443 if scheme == "https" else 80)
    return scheme, p.hostname.lower(), int(port)


def _is_same_origin(request: Request) -> bool:
    """Verify same-origin using Origin or Referer headers.

    Behavior:
    - If Origin is present, require exact scheme/host/port match with server.
    - Else if Referer is present, validate its origin similarly.
    - Else (no headers): allow to not break non-browser clients.
    """
    scheme = (request.url.scheme or "http").lower()
    server = (
        scheme,
        (request.url.hostname or "").lower(),
        int(request.url.port) if request.url.port else (443 if scheme == "https" else 80),
    )
    try:
        origin_val = request.headers.get("origin")
        if origin_val:
            return _origin_tuple(origin_val) == server
        referer_val = request.headers.get("referer")
        if referer_val:
            return _origin_tuple(referer_val) == server
        return True
    except ValueError:
        return False


def ensure_same_origin_for_cookie_writes(request: Request) -> None:
    """Reject cross-site writes authenticated by the session cookie.

    Bearer-authenticated requests are not subject to CSRF and pass unchanged.
    """
    if getattr(request.state, "auth_via", None) != "cookie":
        return
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return
    if not _is_same_origin(request):
        raise AuthorizationError("csrf_violation")
