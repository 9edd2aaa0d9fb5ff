"""Which clients wrote a document recently."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from timetrack.config import CLIENT_TIMEOUT
from timetrack.models.document import ClientEntry


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def prune_clients(
    clients: list[ClientEntry],
    now: datetime,
    timeout: float = CLIENT_TIMEOUT,
) -> list[ClientEntry]:
    """Drop entries not seen within *timeout* seconds of *now*."""
    cutoff = now - timedelta(seconds=timeout)
    return [c for c in clients if as_utc(c.last_seen) > cutoff]


def refresh_clients(
    clients: list[ClientEntry],
    client_id: str,
    now: datetime,
    timeout: float = CLIENT_TIMEOUT,
) -> list[ClientEntry]:
    """Prune stale entries and record *client_id* as seen at *now*.

    A client already present is moved to the end with the new timestamp.
    """
    active = [c for c in prune_clients(clients, now, timeout) if c.id != client_id]
    active.append(ClientEntry(id=client_id, last_seen=now))
    return active


def active_client_ids(
    clients: list[ClientEntry],
    now: datetime,
    timeout: float = CLIENT_TIMEOUT,
) -> list[str]:
    return [c.id for c in prune_clients(clients, now, timeout)]
