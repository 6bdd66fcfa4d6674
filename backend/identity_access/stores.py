"""
In-memory session store: opaque session id → (user id, role, display name).

Why: Clients present only an opaque id (bearer token or cookie). Who the caller
is stays server-side, and the guard derives permissions from the stored role on
every request.

Security: Sessions expire after their TTL. Roles are stored as given by the
login collaborator; legacy aliases are normalized when the Identity is built.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional
import secrets
import threading
import time


def _now() -> int:
    return int(time.time())


@dataclass
class SessionRecord:
    session_id: str
    sub: int
    role: str
    name: str = ""
    expires_at: Optional[int] = None


class SessionStore:
    def __init__(self, ttl_seconds: int = 3600):
        self._data: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self.ttl_seconds = ttl_seconds

    def create(self, *, sub: int, role: str, name: str = "", ttl_seconds: Optional[int] = None) -> SessionRecord:
        sid = secrets.token_urlsafe(24)
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        rec = SessionRecord(session_id=sid, sub=int(sub), role=role, name=name, expires_at=_now() + ttl)
        with self._lock:
            self._data[sid] = rec
        return rec

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            rec = self._data.get(session_id)
            if not rec:
                return None
            if rec.expires_at and rec.expires_at < _now():
                self._data.pop(session_id, None)
                return None
            return rec

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._data.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
