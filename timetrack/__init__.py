"""timetrack — personal time tracker with a versioned, multi-client document store."""

__version__ = "1.0.0"

from timetrack.auth.sessions import InMemorySessionStore, SessionStore
from timetrack.models.document import Project, Session, TimeTrackerData, default_document
from timetrack.server.app import create_app
from timetrack.settings import ConfigManager, Settings, configure_logging
from timetrack.store.document_store import DocumentStore
from timetrack.store.locking import LockInfo, LockManager
from timetrack.store.maintenance import CleanupScheduler
from timetrack.store.results import LoadResult, SaveResult
from timetrack.sync.client import SyncClient, SyncResult, SyncStatus
from timetrack.sync.conflict import ConflictPolicy, ConflictResult, merge_documents
from timetrack.sync.poller import ChangePoller

__all__ = [
    "__version__",
    # Store
    "CleanupScheduler",
    "DocumentStore",
    "LoadResult",
    "LockInfo",
    "LockManager",
    "SaveResult",
    # Models
    "Project",
    "Session",
    "TimeTrackerData",
    "default_document",
    # Sync
    "ChangePoller",
    "ConflictPolicy",
    "ConflictResult",
    "SyncClient",
    "SyncResult",
    "SyncStatus",
    "merge_documents",
    # Server, auth, config
    "ConfigManager",
    "InMemorySessionStore",
    "SessionStore",
    "Settings",
    "configure_logging",
    "create_app",
]
