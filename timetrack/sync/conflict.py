"""Conflict policies and 3-way merging of time tracking documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from timetrack.models.document import TimeTrackerData


class ConflictPolicy(str, Enum):
    """What the sync client does when a save hits a version conflict."""

    OVERWRITE = "overwrite"
    """Resubmit the same payload against the refreshed version."""

    REJECT = "reject"
    """Surface the first conflict to the caller without retrying."""

    MERGE = "merge"
    """Merge local and remote edits; retry only if the merge is clean."""


@dataclass
class ConflictResult:
    """Result of a merge operation."""

    merged: Any
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    is_clean: bool = True

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0


_SENTINEL = object()


def merge_json(
    ancestor: dict[str, Any],
    ours: dict[str, Any],
    theirs: dict[str, Any],
) -> ConflictResult:
    """Property-level 3-way merge for JSON dicts.

    Non-overlapping changes merge automatically.  When both sides changed
    the same key to different dicts the merge recurses; any other
    overlapping change is a conflict and keeps our value.
    """
    merged = dict(ancestor)
    conflicts: list[dict[str, Any]] = []

    for key in set(ancestor) | set(ours) | set(theirs):
        ancestor_val = ancestor.get(key, _SENTINEL)
        our_val = ours.get(key, _SENTINEL)
        their_val = theirs.get(key, _SENTINEL)

        our_changed = our_val != ancestor_val
        their_changed = their_val != ancestor_val

        if not our_changed and not their_changed:
            continue

        if our_changed and not their_changed:
            _assign(merged, key, our_val)
            continue

        if their_changed and not our_changed:
            _assign(merged, key, their_val)
            continue

        if our_val == their_val:
            _assign(merged, key, our_val)
            continue

        if (
            isinstance(our_val, dict)
            and isinstance(their_val, dict)
            and isinstance(ancestor_val, dict)
        ):
            sub_result = merge_json(ancestor_val, our_val, their_val)
            merged[key] = sub_result.merged
            conflicts.extend(
                {**c, "key": f"{key}.{c.get('key', '')}"} for c in sub_result.conflicts
            )
            continue

        merged[key] = our_val if our_val is not _SENTINEL else their_val
        conflicts.append({
            "key": key,
            "ancestor": ancestor_val if ancestor_val is not _SENTINEL else None,
            "ours": our_val if our_val is not _SENTINEL else None,
            "theirs": their_val if their_val is not _SENTINEL else None,
        })

    return ConflictResult(
        merged=merged,
        conflicts=conflicts,
        is_clean=len(conflicts) == 0,
    )


def merge_documents(
    ancestor: TimeTrackerData,
    ours: TimeTrackerData,
    theirs: TimeTrackerData,
) -> ConflictResult:
    """Record-level 3-way merge of two edited copies of a document.

    Sessions are matched by ``id`` and projects by ``name``; an edit to
    different fields of the same session merges cleanly.  The running
    session is merged as a single value.  ``merged`` is a
    :class:`TimeTrackerData`; on conflict it holds our side of every
    conflicting value.
    """
    a, o, t = ancestor.to_json(), ours.to_json(), theirs.to_json()
    conflicts: list[dict[str, Any]] = []

    sessions, session_conflicts = _merge_keyed(
        a.get("sessions", []), o.get("sessions", []), t.get("sessions", []), "id",
    )
    conflicts.extend({**c, "key": f"sessions.{c['key']}"} for c in session_conflicts)

    projects, project_conflicts = _merge_keyed(
        a.get("projects", []), o.get("projects", []), t.get("projects", []), "name",
    )
    conflicts.extend({**c, "key": f"projects.{c['key']}"} for c in project_conflicts)

    current = merge_json(
        _pick(a, "currentSession"), _pick(o, "currentSession"), _pick(t, "currentSession"),
    )
    conflicts.extend(current.conflicts)

    merged = TimeTrackerData.model_validate({
        "sessions": sessions,
        "projects": projects,
        "currentSession": current.merged.get("currentSession"),
    })
    return ConflictResult(merged=merged, conflicts=conflicts, is_clean=not conflicts)


def _merge_keyed(
    ancestor: list[dict[str, Any]],
    ours: list[dict[str, Any]],
    theirs: list[dict[str, Any]],
    key: str,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Merge lists of records identified by *key*.

    Records only we added come first (newest-first convention), followed
    by the surviving records in their order.
    """
    result = merge_json(_index(ancestor, key), _index(ours, key), _index(theirs, key))
    merged = result.merged

    ordered: list[dict[str, Any]] = []
    seen: set[str] = set()
    theirs_keys = {r[key] for r in theirs}
    ancestor_keys = {r[key] for r in ancestor}
    for record in ours:
        k = record[key]
        if k in merged and k not in theirs_keys and k not in ancestor_keys:
            ordered.append(merged[k])
            seen.add(k)
    for record in theirs + ours:
        k = record[key]
        if k in merged and k not in seen:
            ordered.append(merged[k])
            seen.add(k)
    return ordered, result.conflicts


def _index(records: list[dict[str, Any]], key: str) -> dict[str, dict[str, Any]]:
    return {r[key]: r for r in records}


def _pick(data: dict[str, Any], key: str) -> dict[str, Any]:
    return {key: data[key]} if key in data else {}


def _assign(target: dict[str, Any], key: str, value: Any) -> None:
    if value is _SENTINEL:
        target.pop(key, None)
    else:
        target[key] = value
