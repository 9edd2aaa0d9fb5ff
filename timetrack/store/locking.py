"""Advisory lock markers guarding a document's read-check-write cycle."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from timetrack.config import CLIENT_TIMEOUT, LOCK_POLL_INTERVAL, LOCK_WAIT_TIME

logger = logging.getLogger(__name__)

# Serialises acquisition probes on the same marker within one process.
_GUARDS: dict[str, threading.Lock] = {}
_GUARDS_LOCK = threading.Lock()


def _guard_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _GUARDS_LOCK:
        guard = _GUARDS.get(key)
        if guard is None:
            guard = _GUARDS[key] = threading.Lock()
        return guard


def _new_owner() -> str:
    return f"pid_{os.getpid()}_{uuid.uuid4().hex[:12]}"


@dataclass
class LockInfo:
    """Contents of a lock marker."""

    owner: str
    timestamp: float
    timeout: float = CLIENT_TIMEOUT

    @property
    def age(self) -> float:
        return time.time() - self.timestamp

    @property
    def is_expired(self) -> bool:
        return self.age > self.timeout

    def to_dict(self) -> dict:
        return {
            "timestamp": datetime.fromtimestamp(self.timestamp, timezone.utc).isoformat(),
            "owner": self.owner,
        }

    @classmethod
    def from_dict(cls, data: dict, timeout: float = CLIENT_TIMEOUT) -> LockInfo:
        stamp = data["timestamp"]
        if isinstance(stamp, str):
            stamp = datetime.fromisoformat(stamp.replace("Z", "+00:00")).timestamp()
        return cls(owner=str(data["owner"]), timestamp=float(stamp), timeout=timeout)


class LockManager:
    """Mutual exclusion through a marker file.

    ``UNLOCKED -> acquire -> LOCKED -> release | staleness -> UNLOCKED``.

    The marker is created with ``O_CREAT | O_EXCL`` and read back to
    confirm ownership.  A marker older than *timeout* is treated as
    abandoned and reclaimed.  The lock is advisory: it only coordinates
    writers that go through a LockManager on the same path.

    Parameters
    ----------
    lock_path:
        Location of the marker file.
    timeout:
        Age in seconds after which a marker counts as stale.
    poll_interval:
        Delay between probes in :meth:`wait_for_lock`.
    """

    def __init__(
        self,
        lock_path: str | Path,
        timeout: float = CLIENT_TIMEOUT,
        poll_interval: float = LOCK_POLL_INTERVAL,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.owner: str | None = None
        self._guard = _guard_for(self.lock_path)

    @property
    def is_held(self) -> bool:
        """True while this manager owns the marker."""
        return self.owner is not None

    def acquire(self) -> bool:
        """Try once to take the lock without waiting.

        A stale marker is removed and acquisition retried a single time.
        """
        with self._guard:
            if self._try_create():
                return True
            if not self._reclaim_if_stale():
                return False
            return self._try_create()

    def wait_for_lock(self, max_wait: float = LOCK_WAIT_TIME) -> bool:
        """Probe :meth:`acquire` every *poll_interval* until *max_wait* elapses."""
        deadline = time.monotonic() + max_wait
        while True:
            if self.acquire():
                return True
            if time.monotonic() >= deadline:
                logger.warning("Timed out after %.1fs waiting for %s", max_wait, self.lock_path)
                return False
            time.sleep(self.poll_interval)

    def release(self) -> None:
        """Delete the marker.  Releasing an absent lock is a no-op.

        The marker is first renamed to a name private to this owner, so the
        owner check and the delete act on the same file even if another
        writer reclaims the path in between.  A foreign marker caught this
        way is linked back unless the path has been taken again meanwhile.
        """
        owner, self.owner = self.owner, None
        if owner is None:
            return
        private = self.lock_path.with_name(f"{self.lock_path.name}.{owner}.release")
        with self._guard:
            try:
                os.replace(self.lock_path, private)
            except FileNotFoundError:
                logger.warning("Lock %s vanished before release", self.lock_path)
                return

            current = _read_info(private, self.timeout)
            if current is not None and current.owner != owner:
                # Our marker went stale and someone else reclaimed it.
                logger.warning("Lock %s now owned by %s, not releasing", self.lock_path, current.owner)
                try:
                    os.link(private, self.lock_path)
                except FileExistsError:
                    logger.warning("Lock %s retaken while restoring %s", self.lock_path, current.owner)
                except OSError:
                    logger.error("Could not restore lock %s", self.lock_path, exc_info=True)
            private.unlink(missing_ok=True)
        logger.debug("Released lock %s (%s)", self.lock_path, owner)

    def read(self) -> LockInfo | None:
        """Return the current marker contents, or None if absent or unreadable."""
        return _read_info(self.lock_path, self.timeout)

    def is_locked(self) -> LockInfo | None:
        """Return the live lock, or None if unlocked or stale."""
        info = self.read()
        if info is None or info.is_expired:
            return None
        return info

    def _try_create(self) -> bool:
        owner = _new_owner()
        info = LockInfo(owner=owner, timestamp=time.time(), timeout=self.timeout)
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(info.to_dict(), fh)

        # Read back: a concurrent reclaim may have replaced our marker.
        current = self.read()
        if current is None or current.owner != owner:
            logger.debug("Lock %s taken by another owner during acquire", self.lock_path)
            return False
        self.owner = owner
        logger.debug("Acquired lock %s (%s)", self.lock_path, owner)
        return True

    def _reclaim_if_stale(self) -> bool:
        """Remove an abandoned marker.  Returns True if one was removed."""
        info = self.read()
        if info is None:
            # Unreadable marker: fall back to its modification time.
            try:
                age = time.time() - self.lock_path.stat().st_mtime
            except FileNotFoundError:
                return True
            if age <= self.timeout:
                return False
            logger.info("Removing unreadable stale lock %s", self.lock_path)
        elif not info.is_expired:
            return False
        else:
            logger.info(
                "Removing stale lock %s held by %s for %.1fs",
                self.lock_path, info.owner, info.age,
            )
        self.lock_path.unlink(missing_ok=True)
        return True


def _read_info(path: Path, timeout: float) -> LockInfo | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return LockInfo.from_dict(data, timeout=timeout)
    except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError):
        return None
