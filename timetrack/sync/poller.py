"""Detect remote edits by polling the version probe."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable

from timetrack.config import POLL_INTERVAL
from timetrack.models.document import TimeTrackerData

if TYPE_CHECKING:
    from timetrack.sync.client import SyncClient

logger = logging.getLogger(__name__)

DataCallback = Callable[[TimeTrackerData], None]


class ChangePoller:
    """Periodically probe the server version and reload when it moved.

    Uses a chain of daemon ``threading.Timer`` objects.  ``start`` while
    running is a no-op; ``stop`` is idempotent.
    """

    def __init__(
        self,
        client: SyncClient,
        on_change: DataCallback | None = None,
        interval: float = POLL_INTERVAL,
    ) -> None:
        self._client = client
        self._on_change = on_change
        self._interval = interval
        self._timer: threading.Timer | None = None
        self._running = False
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def interval(self) -> float:
        return self._interval

    def set_callback(self, on_change: DataCallback | None) -> None:
        self._on_change = on_change

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._schedule_next()
        logger.debug("Polling for remote changes every %.1fs", self._interval)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def set_interval(self, interval: float) -> None:
        """Change the interval; a running poller restarts with it."""
        self._interval = interval
        if self._running:
            self.stop()
            self.start()

    def poll_once(self) -> bool:
        """Probe once and reload if stale.  Returns True if data was reloaded."""
        if not self._client.check_for_updates():
            return False
        result = self._client.load_data()
        if not result.success or result.data is None:
            logger.debug("Reload after remote change failed: %s", result.error)
            return False
        logger.info("Remote change detected, now at version %d", result.version)
        if self._on_change is not None:
            try:
                self._on_change(result.data)
            except Exception:
                logger.exception("Data change callback failed")
        return True

    def _schedule_next(self) -> None:
        if not self._running:
            return
        self._timer = threading.Timer(self._interval, self._run)
        self._timer.daemon = True
        self._timer.start()

    def _run(self) -> None:
        # Only the timer currently owned by this poller may continue the
        # chain; a restart during poll_once leaves this one orphaned.
        this_timer = threading.current_thread()
        with self._lock:
            if not self._running or self._timer is not this_timer:
                return
        try:
            self.poll_once()
        except Exception:
            logger.exception("Polling for changes failed")
        finally:
            with self._lock:
                if self._timer is this_timer:
                    self._schedule_next()
