"""Login sessions for the single-user toy authentication.

The store is injected into the web app instead of living in a module
global, so tests can supply an isolated instance.
"""

from __future__ import annotations

import abc
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from timetrack.config import SESSION_DURATION

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserSession:
    """An authenticated login."""

    id: str
    user_id: str
    created_at: datetime = field(default_factory=_utc_now)
    last_activity: datetime = field(default_factory=_utc_now)


class SessionStore(abc.ABC):
    """Create, validate and invalidate login sessions by id."""

    @abc.abstractmethod
    def create(self, user_id: str) -> str:
        """Start a session for *user_id* and return its id."""

    @abc.abstractmethod
    def validate(self, session_id: str) -> UserSession | None:
        """Return the live session, or None if unknown or expired."""

    @abc.abstractmethod
    def invalidate(self, session_id: str) -> bool:
        """End a session.  Returns True if it existed."""

    @abc.abstractmethod
    def cleanup_expired(self) -> int:
        """Drop expired sessions and return how many were removed."""


class InMemorySessionStore(SessionStore):
    """Sessions in a dict guarded by a mutex; lost on restart."""

    def __init__(self, duration: float = SESSION_DURATION) -> None:
        self._duration = timedelta(seconds=duration)
        self._sessions: dict[str, UserSession] = {}
        self._lock = threading.Lock()

    def create(self, user_id: str) -> str:
        session_id = secrets.token_urlsafe(24)
        with self._lock:
            self._sessions[session_id] = UserSession(id=session_id, user_id=user_id)
        logger.info("Created session for user %s", user_id)
        return session_id

    def validate(self, session_id: str) -> UserSession | None:
        now = _utc_now()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if now - session.created_at > self._duration:
                del self._sessions[session_id]
                return None
            session.last_activity = now
            return session

    def invalidate(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cleanup_expired(self) -> int:
        cutoff = _utc_now() - self._duration
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.created_at < cutoff]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.debug("Removed %d expired session(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
