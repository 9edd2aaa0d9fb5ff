"""Document models."""

from timetrack.models.document import (
    ClientEntry,
    Project,
    Session,
    StoredDocument,
    TimeTrackerData,
    default_document,
)

__all__ = [
    "ClientEntry",
    "Project",
    "Session",
    "StoredDocument",
    "TimeTrackerData",
    "default_document",
]
