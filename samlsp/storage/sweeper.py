"""Background expiry sweeps for the session store and replay cache."""

from __future__ import annotations

import logging
import threading

from samlsp.storage.replay import ReplayCache
from samlsp.storage.sessions import SessionStore

logger = logging.getLogger(__name__)


class StoreSweeper:
    """Periodically purges expired sessions and replay records.

    Runs on a daemon thread independent of request handling.
    """

    def __init__(
        self,
        sessions: SessionStore,
        replay_cache: ReplayCache,
        interval: float = 60.0,
    ) -> None:
        self.sessions = sessions
        self.replay_cache = replay_cache
        self.interval = interval
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the sweeper thread. Calling it twice is a no-op."""
        if self._running:
            return

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run, name="samlsp-sweeper", daemon=True)
        self._thread.start()
        logger.info("Store sweeper started (interval %.0fs)", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the sweeper thread and wait for it to exit."""
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Store sweeper stopped")

    def sweep_once(self) -> tuple[int, int]:
        """Run one sweep of both stores.

        Returns:
            (sessions removed, replay records removed)
        """
        return self.sessions.sweep(), self.replay_cache.sweep()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                sessions, records = self.sweep_once()
            except Exception:
                logger.exception("Store sweep failed")
                continue
            if sessions or records:
                logger.debug("Sweep removed %d session(s), %d replay record(s)", sessions, records)
