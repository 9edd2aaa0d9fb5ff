"""Structured results returned across the document store boundary."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from timetrack.models.document import TimeTrackerData


class LoadResult(BaseModel):
    """Outcome of a load."""

    success: bool = True
    data: Optional[TimeTrackerData] = None
    version: int = 0
    exists: bool = False
    recovered: bool = False
    """True when the stored file was unreadable and defaults were returned."""

    error: str = ""


class SaveResult(BaseModel):
    """Outcome of a save or update.

    On conflict ``version`` and ``data`` describe what the store holds now.
    """

    success: bool = False
    version: int = 0
    conflict: bool = False
    reason: str = ""
    """Set on failure: 'version_mismatch', 'lock_timeout', 'invalid', 'io_error'."""

    data: Optional[TimeTrackerData] = None
    error: str = ""
