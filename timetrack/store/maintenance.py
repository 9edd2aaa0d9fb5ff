"""Periodic purge of stale documents using threading.Timer."""

from __future__ import annotations

import logging
import threading

from timetrack.store.document_store import DocumentStore

logger = logging.getLogger(__name__)


class CleanupScheduler:
    """Run :meth:`DocumentStore.cleanup_stale` on a fixed interval.

    Not part of the request path; a server process may start one at boot.
    """

    def __init__(self, store: DocumentStore, interval_hours: float = 24) -> None:
        self._store = store
        self._interval_hours = interval_hours
        self._timer: threading.Timer | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the periodic schedule.  Starting twice is a no-op."""
        if self._running:
            return
        self._running = True
        self._schedule_next()
        logger.info("Scheduled stale data cleanup every %.1f hours", self._interval_hours)

    def stop(self) -> None:
        """Stop the periodic schedule."""
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.info("Stopped stale data cleanup")

    def run_now(self) -> list[str]:
        """Execute an immediate cleanup."""
        removed = self._store.cleanup_stale()
        if removed:
            logger.info("Cleanup removed %d stale document(s)", len(removed))
        return removed

    def _schedule_next(self) -> None:
        if not self._running:
            return
        self._timer = threading.Timer(self._interval_hours * 3600, self._run)
        self._timer.daemon = True
        self._timer.start()

    def _run(self) -> None:
        if not self._running:
            return
        try:
            self.run_now()
        except Exception:
            logger.exception("Scheduled cleanup failed")
        finally:
            self._schedule_next()
