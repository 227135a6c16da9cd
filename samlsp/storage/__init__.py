"""In-memory stores for sessions and consumed protocol IDs."""

from samlsp.storage.replay import (
    ASSERTION_PREFIX,
    DEFAULT_REPLAY_WINDOW,
    ReplayCache,
    ReplayRecord,
)
from samlsp.storage.sessions import DEFAULT_SESSION_TTL, Session, SessionStore
from samlsp.storage.sweeper import StoreSweeper

__all__ = [
    # Replay cache
    "ASSERTION_PREFIX",
    "DEFAULT_REPLAY_WINDOW",
    "ReplayCache",
    "ReplayRecord",
    # Sessions
    "DEFAULT_SESSION_TTL",
    "Session",
    "SessionStore",
    # Sweeper
    "StoreSweeper",
]
