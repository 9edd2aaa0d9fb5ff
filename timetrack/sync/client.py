"""SyncClient — client side of the versioned save/load protocol.

Wraps the ``/api/data`` endpoints: remembers the last version it saw,
sends it as ``expectedVersion`` on every save, retries conflicts and
transport failures with capped exponential backoff, and can poll a cheap
``HEAD`` probe for edits made by other clients.

Usage::

    client = SyncClient("http://localhost:5000")
    client.login("admin", "admin")
    loaded = client.load_data()
    client.set_on_data_change(render)
    client.start_polling()
    client.save_data(edited)
"""

from __future__ import annotations

import logging
import random
import string
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

import requests
from pydantic import BaseModel, Field, ValidationError

from timetrack.config import (
    BACKOFF_BASE,
    BACKOFF_CAP,
    MAX_RETRIES,
    POLL_INTERVAL,
    REQUEST_TIMEOUT,
    VERSION_HEADER,
)
from timetrack.models.document import Session, TimeTrackerData
from timetrack.sync.conflict import ConflictPolicy, merge_documents
from timetrack.sync.poller import ChangePoller, DataCallback

logger = logging.getLogger(__name__)

DATA_PATH = "/api/data"
CURRENT_SESSION_PATH = "/api/current-session"
CLIENTS_PATH = "/api/clients"
LOGIN_PATH = "/api/auth/login"
LOGOUT_PATH = "/api/auth/logout"


class SyncStatus(str, Enum):
    """What the UI should show about persistence of recent edits."""

    SYNCED = "synced"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    ERROR = "error"
    OFFLINE = "offline"


class SyncResult(BaseModel):
    """Normalised outcome of a client operation."""

    success: bool = False
    data: Optional[TimeTrackerData] = None
    version: Optional[int] = None
    conflict: bool = False
    unauthorized: bool = False
    conflicts: list[dict[str, Any]] = Field(default_factory=list)
    error: str = ""


def generate_client_id() -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=9))
    return f"client_{int(time.time() * 1000)}_{suffix}"


class SyncClient:
    """Client-side façade over the document store's HTTP routes.

    Parameters
    ----------
    base_url:
        Server root, e.g. ``http://localhost:5000``.
    session:
        HTTP session; defaults to a fresh :class:`requests.Session`.  It
        carries the login cookie.
    conflict_policy:
        How save conflicts are handled, see :class:`ConflictPolicy`.
    max_retries:
        Total number of save attempts.
    sleep:
        Used for backoff waits.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        session: Any = None,
        conflict_policy: ConflictPolicy | str = ConflictPolicy.OVERWRITE,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
        backoff_cap: float = BACKOFF_CAP,
        poll_interval: float = POLL_INTERVAL,
        timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.conflict_policy = ConflictPolicy(conflict_policy)
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.timeout = timeout
        self._sleep = sleep
        self._client_id = generate_client_id()
        self._current_version = 0
        self._base: TimeTrackerData | None = None
        self._status = SyncStatus.SYNCED
        self._status_listener: Callable[[SyncStatus], None] | None = None
        self._state_lock = threading.Lock()
        self._poller = ChangePoller(self, interval=poll_interval)

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> SyncClient:
        kwargs.setdefault("poll_interval", settings.poll_interval)
        return cls(settings.server_url, **kwargs)

    # -- state ---------------------------------------------------------------

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def current_version(self) -> int:
        with self._state_lock:
            return self._current_version

    @current_version.setter
    def current_version(self, version: int) -> None:
        with self._state_lock:
            self._current_version = version

    @property
    def status(self) -> SyncStatus:
        return self._status

    def set_status_listener(self, listener: Callable[[SyncStatus], None] | None) -> None:
        self._status_listener = listener

    def _set_status(self, status: SyncStatus) -> None:
        if status == self._status:
            return
        self._status = status
        if self._status_listener is not None:
            try:
                self._status_listener(status)
            except Exception:
                logger.exception("Sync status listener failed")

    def _remember(self, version: int, data: TimeTrackerData | None) -> None:
        with self._state_lock:
            self._current_version = version
            if data is not None:
                self._base = data

    # -- data ----------------------------------------------------------------

    def load_data(self) -> SyncResult:
        """Fetch the document and remember its version."""
        self._set_status(SyncStatus.SYNCING)
        try:
            response = self.session.get(self._url(DATA_PATH), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Error loading data: %s", exc)
            self._set_status(SyncStatus.OFFLINE)
            return SyncResult(error=str(exc))

        if response.status_code == 401:
            self._set_status(SyncStatus.ERROR)
            return SyncResult(unauthorized=True, error="Unauthorized")
        if not _is_ok(response):
            self._set_status(SyncStatus.ERROR)
            return SyncResult(error=_error_message(response))

        try:
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("expected a JSON object")
            data = TimeTrackerData.model_validate(body)
            version = _as_int(body.get("_version", 0))
            if version is None:
                raise ValueError("_version is not an integer")
        except (ValueError, ValidationError) as exc:
            logger.error("Malformed data from server: %s", exc)
            self._set_status(SyncStatus.ERROR)
            return SyncResult(error=f"Malformed response: {exc}")

        self._remember(version, data)
        self._set_status(SyncStatus.SYNCED)
        return SyncResult(success=True, data=data, version=version)

    def save_data(self, data: TimeTrackerData | dict[str, Any]) -> SyncResult:
        """Save *data* against the remembered version.

        Conflicts are handled per :attr:`conflict_policy`; transport and
        server errors are retried.  At most :attr:`max_retries` requests
        are made.
        """
        try:
            payload = (
                data if isinstance(data, TimeTrackerData)
                else TimeTrackerData.model_validate(data)
            )
        except ValidationError as exc:
            logger.error("Refusing to save invalid document: %s", exc)
            self._set_status(SyncStatus.ERROR)
            return SyncResult(error=f"Invalid document: {exc}")
        with self._state_lock:
            ancestor = self._base or TimeTrackerData()
        self._set_status(SyncStatus.SYNCING)

        attempt = 0
        while True:
            attempt += 1
            can_retry = attempt < self.max_retries
            body = {
                "data": payload.to_json(),
                "expectedVersion": self.current_version,
                "clientId": self._client_id,
            }
            try:
                response = self.session.post(self._url(DATA_PATH), json=body, timeout=self.timeout)
            except requests.RequestException as exc:
                logger.warning("Error saving data (attempt %d): %s", attempt, exc)
                if can_retry:
                    self._backoff(attempt)
                    continue
                self._set_status(SyncStatus.OFFLINE)
                return SyncResult(error=str(exc))

            if response.status_code == 401:
                self._set_status(SyncStatus.ERROR)
                return SyncResult(unauthorized=True, error="Unauthorized")

            if response.status_code == 409:
                conflict = _json(response)
                remote_version = _as_int(conflict.get("actualVersion"))
                if remote_version is None:
                    logger.error("Malformed conflict response: %r", conflict)
                    self._set_status(SyncStatus.ERROR)
                    return SyncResult(error="Malformed conflict response from server")
                remote = _parse_document(conflict.get("currentData"))
                self.current_version = remote_version
                error = str(conflict.get("error") or "Version conflict")

                if self.conflict_policy is ConflictPolicy.REJECT:
                    return self._conflict(remote, remote_version, error)

                if self.conflict_policy is ConflictPolicy.MERGE:
                    if remote is None:
                        return self._conflict(remote, remote_version, error)
                    merge = merge_documents(ancestor, payload, remote)
                    if not merge.is_clean:
                        logger.info("Merge with version %d has %d conflict(s)",
                                    remote_version, len(merge.conflicts))
                        return self._conflict(remote, remote_version, error, merge.conflicts)
                    payload, ancestor = merge.merged, remote

                if can_retry:
                    logger.info("Save conflict, retrying %d/%d with updated version %d",
                                attempt, self.max_retries, remote_version)
                    self._backoff(attempt)
                    continue
                return self._conflict(remote, remote_version, error)

            if 400 <= response.status_code < 500:
                self._set_status(SyncStatus.ERROR)
                return SyncResult(error=_error_message(response))

            if not _is_ok(response):
                logger.warning("Error saving data (attempt %d): %s", attempt, _error_message(response))
                if can_retry:
                    self._backoff(attempt)
                    continue
                self._set_status(SyncStatus.ERROR)
                return SyncResult(error=_error_message(response))

            version = _as_int(_json(response).get("version"))
            if version is None:
                version = self.current_version + 1
            self._remember(version, payload)
            self._set_status(SyncStatus.SYNCED)
            return SyncResult(success=True, version=version)

    def check_for_updates(self) -> bool:
        """True if the server holds a newer version than the one remembered."""
        try:
            response = self.session.head(self._url(DATA_PATH), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.debug("Error checking for updates: %s", exc)
            return False
        if not _is_ok(response):
            return False
        header = response.headers.get(VERSION_HEADER)
        if header is None:
            return False
        try:
            server_version = int(header)
        except ValueError:
            return False
        return server_version > self.current_version

    def get_active_clients(self) -> list[str]:
        try:
            response = self.session.get(self._url(CLIENTS_PATH), timeout=self.timeout)
        except requests.RequestException:
            return []
        if not _is_ok(response):
            return []
        return list(_json(response).get("clients", []))

    # -- running timer -------------------------------------------------------

    def save_current_session(self, session: Session | dict[str, Any]) -> bool:
        """Store the running session on the server."""
        if isinstance(session, Session):
            session = session.model_dump(mode="json", by_alias=True, exclude_none=True)
        return self._send_current_session("post", {"currentSession": session})

    def clear_current_session(self) -> bool:
        return self._send_current_session("delete", None)

    def _send_current_session(self, method: str, body: dict[str, Any] | None) -> bool:
        try:
            response = self.session.request(
                method.upper(), self._url(CURRENT_SESSION_PATH), json=body, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Error updating current session: %s", exc)
            return False
        if not _is_ok(response):
            logger.error("Failed to update current session: %s", _error_message(response))
            return False
        # The remembered version is left alone: the server bumped it, so the
        # next poll reloads instead of the next save overwriting blindly.
        return bool(_json(response).get("success"))

    # -- auth ----------------------------------------------------------------

    def login(self, username: str, password: str) -> bool:
        try:
            response = self.session.post(
                self._url(LOGIN_PATH),
                json={"username": username, "password": password},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Login failed: %s", exc)
            return False
        return _is_ok(response) and bool(_json(response).get("success"))

    def logout(self) -> bool:
        self.stop_polling()
        try:
            response = self.session.post(self._url(LOGOUT_PATH), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Logout failed: %s", exc)
            return False
        return _is_ok(response)

    # -- polling -------------------------------------------------------------

    @property
    def poller(self) -> ChangePoller:
        return self._poller

    @property
    def is_polling(self) -> bool:
        return self._poller.is_running

    def set_on_data_change(self, callback: DataCallback | None) -> None:
        self._poller.set_callback(callback)

    def start_polling(self) -> None:
        self._poller.start()

    def stop_polling(self) -> None:
        self._poller.stop()

    def set_poll_interval(self, interval: float) -> None:
        self._poller.set_interval(interval)

    # -- helpers -------------------------------------------------------------

    def backoff_delay(self, retry: int) -> float:
        """Delay before the *retry*-th retry (1-based)."""
        return min(self.backoff_base * (2 ** (retry - 1)), self.backoff_cap)

    def _backoff(self, retry: int) -> None:
        self._sleep(self.backoff_delay(retry))

    def _conflict(
        self,
        remote: TimeTrackerData | None,
        version: int,
        error: str,
        conflicts: list[dict[str, Any]] | None = None,
    ) -> SyncResult:
        self._set_status(SyncStatus.CONFLICT)
        return SyncResult(
            conflict=True,
            data=remote,
            version=version,
            conflicts=conflicts or [],
            error=error,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"


def _is_ok(response: Any) -> bool:
    return 200 <= response.status_code < 300


def _json(response: Any) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(response: Any) -> str:
    message = _json(response).get("error")
    return str(message) if message else f"HTTP {response.status_code}"


def _parse_document(raw: Any) -> TimeTrackerData | None:
    if not isinstance(raw, dict):
        return None
    try:
        return TimeTrackerData.model_validate(raw)
    except ValidationError:
        return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
