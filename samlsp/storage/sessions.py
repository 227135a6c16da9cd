"""In-memory store for authenticated SP sessions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any

from samlsp.core.clock import Clock, utc_now
from samlsp.core.saml.codec import generate_id

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(minutes=30)


@dataclass(frozen=True)
class Session:
    """An authenticated session created from a validated Response."""

    session_id: str
    name_id: str
    session_index: str | None
    attributes: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    created_at: datetime = field(default_factory=utc_now)

    def expires_at(self, ttl: timedelta) -> datetime:
        return self.created_at + ttl

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "name_id": self.name_id,
            "session_index": self.session_index,
            "attributes": dict(self.attributes),
            "created_at": self.created_at.isoformat(),
        }


class SessionStore:
    """Thread-safe session registry with a fixed time-to-live.

    A session is valid while ``now - created_at <= ttl``. Expired sessions
    are removed when looked up and by :meth:`sweep`. No operation raises for
    an unknown session ID.
    """

    def __init__(self, ttl: timedelta = DEFAULT_SESSION_TTL, clock: Clock = utc_now) -> None:
        self.ttl = ttl
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def _is_live(self, session: Session, now: datetime) -> bool:
        return now - session.created_at <= self.ttl

    def create(
        self,
        name_id: str,
        session_index: str | None = None,
        attributes: Mapping[str, str] | None = None,
    ) -> str:
        """Create a session and return its opaque identifier."""
        session = Session(
            session_id=generate_id(),
            name_id=name_id,
            session_index=session_index,
            attributes=MappingProxyType(dict(attributes or {})),
            created_at=self._clock(),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Created session for %s", name_id)
        return session.session_id

    def get(self, session_id: str) -> Session | None:
        """Return a live session, removing it if it has expired."""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if not self._is_live(session, now):
                del self._sessions[session_id]
                logger.debug("Session expired on lookup")
                return None
            return session

    def peek(self, session_id: str) -> Session | None:
        """Return a session record without checking or removing on expiry."""
        with self._lock:
            return self._sessions.get(session_id)

    def is_expired(self, session: Session) -> bool:
        return not self._is_live(session, self._clock())

    def validate(self, session_id: str) -> bool:
        """Return True if the session exists and has not expired."""
        return self.get(session_id) is not None

    def invalidate(self, session_id: str) -> None:
        """Remove a session. Unknown IDs are ignored."""
        with self._lock:
            self._sessions.pop(session_id, None)

    def invalidate_by_name_id(self, name_id: str, session_index: str | None = None) -> int:
        """Remove every session for a principal.

        Args:
            name_id: NameID whose sessions are terminated.
            session_index: When given, only sessions with this index are removed.

        Returns:
            Number of sessions removed.
        """
        with self._lock:
            doomed = [
                sid
                for sid, session in self._sessions.items()
                if session.name_id == name_id
                and (session_index is None or session.session_index == session_index)
            ]
            for sid in doomed:
                del self._sessions[sid]
        if doomed:
            logger.info("Invalidated %d session(s) for %s", len(doomed), name_id)
        return len(doomed)

    def sweep(self) -> int:
        """Remove all expired sessions.

        Returns:
            Number of sessions removed.
        """
        now = self._clock()
        with self._lock:
            expired = [sid for sid, session in self._sessions.items() if not self._is_live(session, now)]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.debug("Swept %d expired sessions", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __contains__(self, session_id: object) -> bool:
        return isinstance(session_id, str) and self.get(session_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
