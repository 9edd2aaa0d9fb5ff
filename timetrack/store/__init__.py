"""Versioned per-user document store with advisory file locking."""

from timetrack.store.document_store import DocumentStore, InvalidUserIdError
from timetrack.store.locking import LockInfo, LockManager
from timetrack.store.maintenance import CleanupScheduler
from timetrack.store.results import LoadResult, SaveResult

__all__ = [
    "CleanupScheduler",
    "DocumentStore",
    "InvalidUserIdError",
    "LoadResult",
    "LockInfo",
    "LockManager",
    "SaveResult",
]
