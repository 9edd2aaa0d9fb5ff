"""DocumentStore — one versioned JSON document per user.

Every accepted write goes through the same cycle while holding the user's
lock marker: read the stored document, compare its ``_version`` with the
version the caller expects, then write the new document with the version
bumped by one.  Writes go to a temp file that is renamed over the target,
so readers (who never take the lock) see either the old or the new
document, never a partial one.

No method raises for expected failures; every operation reports through a
:class:`LoadResult`, :class:`SaveResult` or a plain fallback value.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from timetrack.config import (
    CLIENT_TIMEOUT,
    CORRUPT_SUFFIX,
    DATA_FILE_PATTERN,
    LOCK_FILE_PATTERN,
    LOCK_POLL_INTERVAL,
    LOCK_WAIT_TIME,
    RETENTION_DAYS,
    USER_ID_PATTERN,
)
from timetrack.models.document import StoredDocument, TimeTrackerData, default_document
from timetrack.store.clients import as_utc, active_client_ids, refresh_clients
from timetrack.store.locking import LockManager
from timetrack.store.results import LoadResult, SaveResult

logger = logging.getLogger(__name__)

_USER_ID_RE = re.compile(USER_ID_PATTERN)

Mutator = Callable[[TimeTrackerData], TimeTrackerData]


class InvalidUserIdError(ValueError):
    """Raised internally for user ids that cannot be mapped to a file name."""


class CorruptDocumentError(Exception):
    """The stored file exists but does not hold a valid document.

    ``version`` is the file's ``_version`` when that field is still a
    readable integer, else 0.  Every operation treats the document as being
    at this version, so the counter never moves backwards.
    """

    def __init__(self, message: str, version: int = 0) -> None:
        super().__init__(message)
        self.version = version


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStore:
    """File-backed store with optimistic concurrency control.

    Parameters
    ----------
    data_dir:
        Directory holding ``data_<userId>.json`` and the lock markers.
    client_timeout:
        Seconds a client stays in the liveness list; also the age at
        which a lock marker is considered abandoned.
    lock_wait:
        Maximum seconds a write waits for the lock before giving up.
    retention_days:
        Documents untouched for longer are removed by :meth:`cleanup_stale`.
    """

    def __init__(
        self,
        data_dir: str | Path,
        *,
        client_timeout: float = CLIENT_TIMEOUT,
        lock_wait: float = LOCK_WAIT_TIME,
        lock_poll_interval: float = LOCK_POLL_INTERVAL,
        retention_days: int = RETENTION_DAYS,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.client_timeout = client_timeout
        self.lock_wait = lock_wait
        self.lock_poll_interval = lock_poll_interval
        self.retention_days = retention_days
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Any) -> DocumentStore:
        return cls(
            settings.data_dir,
            client_timeout=settings.client_timeout,
            lock_wait=settings.lock_wait,
            retention_days=settings.retention_days,
        )

    # -- public operations ----------------------------------------------------

    def load(self, user_id: str) -> LoadResult:
        """Return the user's document, or the default document if none exists.

        A missing file is not created.  An unreadable file yields the
        default document with ``recovered=True``.
        """
        try:
            stored = self._read(user_id)
        except InvalidUserIdError as exc:
            return LoadResult(success=False, error=str(exc))
        except CorruptDocumentError as exc:
            logger.warning("Returning defaults for %s: %s", user_id, exc)
            return LoadResult(
                data=default_document(), version=exc.version, exists=True, recovered=True,
            )
        except OSError as exc:
            logger.error("Failed to load data for %s", user_id, exc_info=True)
            return LoadResult(success=False, error=f"Failed to load data: {exc}")

        if stored is None:
            logger.debug("No stored data for %s, using defaults", user_id)
            return LoadResult(data=default_document())
        return LoadResult(data=stored.data(), version=stored.version, exists=True)

    def save(
        self,
        user_id: str,
        data: TimeTrackerData | dict[str, Any],
        client_id: str,
        expected_version: int | None = None,
    ) -> SaveResult:
        """Write *data* if the stored version still equals *expected_version*.

        With ``expected_version=None`` the version check is skipped.  On a
        mismatch nothing is written and the result carries the stored
        version and document.
        """
        try:
            document = (
                data if isinstance(data, TimeTrackerData)
                else TimeTrackerData.model_validate(data)
            )
        except ValidationError as exc:
            logger.info("Rejected invalid document for %s: %s", user_id, exc)
            return SaveResult(reason="invalid", error=f"Invalid document: {exc}")

        return self._write(user_id, client_id, lambda _current: document, expected_version)

    def update(self, user_id: str, mutate: Mutator, client_id: str) -> SaveResult:
        """Apply *mutate* to the stored document under the lock.

        The read-modify-write happens in one critical section, so no
        expected version is needed.
        """
        return self._write(user_id, client_id, mutate, None)

    def get_version(self, user_id: str) -> int:
        """Stored ``_version``, read the same way :meth:`load` and :meth:`save` read it."""
        try:
            stored = self._read(user_id)
        except CorruptDocumentError as exc:
            return exc.version
        except (InvalidUserIdError, OSError):
            return 0
        return stored.version if stored is not None else 0

    def get_active_clients(self, user_id: str) -> list[str]:
        """Ids of clients that wrote within the client timeout."""
        try:
            stored = self._read(user_id)
        except (InvalidUserIdError, CorruptDocumentError, OSError):
            return []
        if stored is None:
            return []
        return active_client_ids(stored.clients, _utc_now(), self.client_timeout)

    def cleanup_stale(self) -> list[str]:
        """Delete documents whose ``_lastModified`` is past the retention window.

        Users whose lock is currently held are skipped.  Returns the ids of
        the removed documents.
        """
        cutoff = _utc_now() - timedelta(days=self.retention_days)
        prefix, suffix = DATA_FILE_PATTERN.split("{user_id}")
        removed: list[str] = []

        for path in sorted(self.data_dir.glob(f"{prefix}*{suffix}")):
            user_id = path.name[len(prefix):-len(suffix)]
            if not _USER_ID_RE.match(user_id):
                continue
            lock = self._lock_for(user_id)
            if not lock.acquire():
                logger.debug("Skipping cleanup of %s: locked", user_id)
                continue
            try:
                stored = self._read(user_id)
                if stored is not None and as_utc(stored.last_modified) < cutoff:
                    path.unlink(missing_ok=True)
                    removed.append(user_id)
                    logger.info("Removed stale data for %s (last modified %s)",
                                user_id, stored.last_modified.isoformat())
            except CorruptDocumentError:
                logger.warning("Skipping cleanup of unreadable document %s", path)
            except OSError:
                logger.error("Cleanup failed for %s", path, exc_info=True)
            finally:
                lock.release()

        return removed

    # -- internals --------------------------------------------------------------

    def _write(
        self,
        user_id: str,
        client_id: str,
        mutate: Mutator,
        expected_version: int | None,
    ) -> SaveResult:
        try:
            lock = self._lock_for(user_id)
        except InvalidUserIdError as exc:
            return SaveResult(reason="invalid", error=str(exc))

        if not lock.wait_for_lock(self.lock_wait):
            logger.error("Failed to acquire lock for user %s", user_id)
            current = self.load(user_id)
            return SaveResult(
                conflict=True,
                reason="lock_timeout",
                version=current.version,
                data=current.data,
                error="Data is locked by another writer",
            )

        try:
            corrupt = False
            corrupt_version = 0
            try:
                stored = self._read(user_id)
            except CorruptDocumentError as exc:
                logger.warning(
                    "Treating unreadable document for %s as version %d: %s",
                    user_id, exc.version, exc,
                )
                corrupt = True
                corrupt_version = exc.version
                stored = None

            current_version = stored.version if stored is not None else corrupt_version
            current_data = stored.data() if stored is not None else default_document()
            clients = stored.clients if stored is not None else []

            if expected_version is not None and expected_version != current_version:
                logger.info(
                    "Version conflict for user %s: expected %d, got %d",
                    user_id, expected_version, current_version,
                )
                return SaveResult(
                    conflict=True,
                    reason="version_mismatch",
                    version=current_version,
                    data=current_data,
                    error="Data has been modified by another client",
                )

            new_data = mutate(current_data)
            now = _utc_now()
            updated = StoredDocument(
                sessions=new_data.sessions,
                projects=new_data.projects,
                current_session=new_data.current_session,
                version=current_version + 1,
                last_modified=now,
                user_id=user_id,
                clients=refresh_clients(clients, client_id, now, self.client_timeout),
            )
            if corrupt:
                self._preserve_corrupt(user_id)
            self._write_atomic(self._data_path(user_id), updated)
            logger.info("Saved data for user %s, version %d", user_id, updated.version)
            return SaveResult(success=True, version=updated.version)
        except ValidationError as exc:
            return SaveResult(reason="invalid", error=f"Invalid document: {exc}")
        except OSError as exc:
            logger.error("Error saving data for user %s", user_id, exc_info=True)
            return SaveResult(reason="io_error", error=f"Failed to save data: {exc}")
        finally:
            lock.release()

    def _read(self, user_id: str) -> StoredDocument | None:
        """Read the stored document; None if the file does not exist."""
        path = self._data_path(user_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptDocumentError(f"{path}: {exc}") from exc
        try:
            return StoredDocument.model_validate(raw)
        except ValidationError as exc:
            raise CorruptDocumentError(f"{path}: {exc}", _raw_version(raw)) from exc

    def _write_atomic(self, path: Path, document: StoredDocument) -> None:
        """Write to a temp file in the same directory, then rename over *path*."""
        payload = document.model_dump(mode="json", by_alias=True, exclude_none=True)
        fd, tmp = tempfile.mkstemp(dir=self.data_dir, prefix=f".{path.stem}_", suffix=".tmp")
        try:
            with open(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            Path(tmp).replace(path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _preserve_corrupt(self, user_id: str) -> None:
        path = self._data_path(user_id)
        backup = path.with_name(path.name + CORRUPT_SUFFIX)
        try:
            shutil.copy2(path, backup)
            logger.warning("Preserved unreadable document as %s", backup)
        except OSError:
            logger.error("Could not preserve unreadable document %s", path, exc_info=True)

    def _data_path(self, user_id: str) -> Path:
        return self.data_dir / DATA_FILE_PATTERN.format(user_id=_check_user_id(user_id))

    def _lock_for(self, user_id: str) -> LockManager:
        path = self.data_dir / LOCK_FILE_PATTERN.format(user_id=_check_user_id(user_id))
        return LockManager(path, timeout=self.client_timeout, poll_interval=self.lock_poll_interval)


def _check_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not _USER_ID_RE.match(user_id):
        raise InvalidUserIdError(f"Invalid user id: {user_id!r}")
    return user_id


def _raw_version(raw: object) -> int:
    """``_version`` of a document that failed validation, when still usable."""
    if not isinstance(raw, dict):
        return 0
    version = raw.get("_version")
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        return 0
    return version
