"""Replay cache for consumed protocol message and assertion IDs."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from samlsp.core.clock import Clock, utc_now

logger = logging.getLogger(__name__)

# Assertion IDs share the cache with message IDs under their own namespace
ASSERTION_PREFIX = "ASSERTION_"

DEFAULT_REPLAY_WINDOW = timedelta(minutes=5)


@dataclass(frozen=True)
class ReplayRecord:
    """An ID and when it was first presented."""

    id: str
    first_seen_at: datetime
    # Kept past the window until this instant, when set
    retain_until: datetime | None = None


class ReplayCache:
    """Thread-safe record of IDs seen within a sliding window.

    An ID presented again while its record is inside the window is a
    replay. A record may be retained past the window up to its
    ``retain_until`` instant. Records past both count as absent and are
    replaced on the next presentation.
    """

    def __init__(self, window: timedelta = DEFAULT_REPLAY_WINDOW, clock: Clock = utc_now) -> None:
        self.window = window
        self._clock = clock
        self._records: dict[str, ReplayRecord] = {}
        self._lock = threading.Lock()

    def _is_live(self, record: ReplayRecord, now: datetime) -> bool:
        if now - record.first_seen_at < self.window:
            return True
        return record.retain_until is not None and now < record.retain_until

    def check_and_record(self, message_id: str, retain_until: datetime | None = None) -> bool:
        """Record an ID if it has not been seen within the window.

        The check and the insert happen under one lock, so concurrent
        presentations of the same ID yield exactly one True.

        Args:
            message_id: ID to check and record.
            retain_until: Keep the record at least until this instant, even
                when that is beyond the window.

        Returns:
            True on first sight, False for a replay.
        """
        now = self._clock()
        with self._lock:
            existing = self._records.get(message_id)
            if existing is not None and self._is_live(existing, now):
                logger.warning("Replay detected for ID %s", message_id)
                return False
            self._records[message_id] = ReplayRecord(
                id=message_id, first_seen_at=now, retain_until=retain_until
            )
            return True

    def check_and_record_assertion(
        self, assertion_id: str, retain_until: datetime | None = None
    ) -> bool:
        """Record an assertion ID under the assertion namespace."""
        return self.check_and_record(f"{ASSERTION_PREFIX}{assertion_id}", retain_until)

    def get(self, message_id: str) -> ReplayRecord | None:
        """Return the live record for an ID, if any."""
        now = self._clock()
        with self._lock:
            record = self._records.get(message_id)
            if record is None:
                return None
            if not self._is_live(record, now):
                del self._records[message_id]
                return None
            return record

    def sweep(self) -> int:
        """Drop records that are past the window and their retention.

        Returns:
            Number of records removed.
        """
        now = self._clock()
        with self._lock:
            stale = [key for key, record in self._records.items() if not self._is_live(record, now)]
            for key in stale:
                del self._records[key]
        if stale:
            logger.debug("Swept %d replay records", len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __contains__(self, message_id: object) -> bool:
        return isinstance(message_id, str) and self.get(message_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
