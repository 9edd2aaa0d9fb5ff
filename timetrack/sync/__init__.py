"""Client-side synchronisation: versioned saves, retries and change polling."""

from timetrack.sync.client import SyncClient, SyncResult, SyncStatus
from timetrack.sync.conflict import ConflictPolicy, ConflictResult, merge_documents, merge_json
from timetrack.sync.poller import ChangePoller

__all__ = [
    "ChangePoller",
    "ConflictPolicy",
    "ConflictResult",
    "SyncClient",
    "SyncResult",
    "SyncStatus",
    "merge_documents",
    "merge_json",
]
