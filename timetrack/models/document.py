"""Document models — the per-user time tracking state and its stored form.

On disk and on the wire every key is camelCase (``currentSession``,
``cashedOut``).  The stored form adds the bookkeeping fields ``_version``,
``_lastModified``, ``_userId`` and ``_clients``; callers only ever see the
stripped :class:`TimeTrackerData`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timetrack.config import DEFAULT_PROJECT_COLOR, DEFAULT_PROJECTS


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Project(BaseModel):
    """A named project sessions are booked against."""

    name: str
    color: str = DEFAULT_PROJECT_COLOR


class Session(BaseModel):
    """One block of tracked time.

    ``project`` refers to a :class:`Project` by name only; deleting the
    project leaves the session untouched.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    start: datetime
    end: Optional[datetime] = None
    project: str = ""
    description: str = ""
    cashed_out: Optional[bool] = Field(default=None, alias="cashedOut")

    @property
    def is_running(self) -> bool:
        return self.end is None


class TimeTrackerData(BaseModel):
    """The caller-visible document: sessions, projects and the running timer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sessions: list[Session] = Field(default_factory=list)
    projects: list[Project] = Field(default_factory=list)
    current_session: Optional[Session] = Field(default=None, alias="currentSession")

    @field_validator("projects", mode="before")
    @classmethod
    def _coerce_project_names(cls, value: Any) -> Any:
        # Older documents stored projects as a plain list of names.
        if isinstance(value, list):
            return [{"name": p} if isinstance(p, str) else p for p in value]
        return value

    @field_validator("projects")
    @classmethod
    def _unique_project_names(cls, value: list[Project]) -> list[Project]:
        names = [p.name for p in value]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate project names: {', '.join(duplicates)}")
        return value

    @field_validator("sessions")
    @classmethod
    def _unique_session_ids(cls, value: list[Session]) -> list[Session]:
        seen: set[str] = set()
        for session in value:
            if session.id in seen:
                raise ValueError(f"duplicate session id: {session.id}")
            seen.add(session.id)
        return value

    def to_json(self) -> dict[str, Any]:
        """Serialise with camelCase keys, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def project_names(self) -> list[str]:
        return [p.name for p in self.projects]


class ClientEntry(BaseModel):
    """A client id together with the last time it wrote."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    last_seen: datetime = Field(default_factory=_utc_now, alias="lastSeen")


class StoredDocument(TimeTrackerData):
    """The on-disk form of a user's document."""

    version: int = Field(default=0, alias="_version")
    last_modified: datetime = Field(default_factory=_utc_now, alias="_lastModified")
    user_id: str = Field(default="", alias="_userId")
    clients: list[ClientEntry] = Field(default_factory=list, alias="_clients")

    @field_validator("clients", mode="before")
    @classmethod
    def _parse_legacy_clients(cls, value: Any) -> Any:
        # Legacy entries look like "<clientId>:<iso timestamp>".
        if not isinstance(value, list):
            return value
        entries = []
        for item in value:
            if isinstance(item, str):
                client_id, sep, stamp = item.partition(":")
                if not sep:
                    continue
                try:
                    seen = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
                except ValueError:
                    continue
                entries.append({"id": client_id, "lastSeen": seen})
            else:
                entries.append(item)
        return entries

    def data(self) -> TimeTrackerData:
        """Return the document with the bookkeeping fields stripped."""
        return TimeTrackerData(
            sessions=self.sessions,
            projects=self.projects,
            current_session=self.current_session,
        )


def default_document() -> TimeTrackerData:
    """The document a user starts with: no sessions, the starter projects."""
    return TimeTrackerData(
        sessions=[],
        projects=[Project(name=name, color=color) for name, color in DEFAULT_PROJECTS],
    )
