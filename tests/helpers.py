"""Test helpers: fake HTTP sessions and document builders."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlsplit


# ---------------------------------------------------------------------------
# HTTP adapters
# ---------------------------------------------------------------------------


class FakeResponse:
    """Minimal stand-in for :class:`requests.Response`."""

    def __init__(
        self,
        status_code: int = 200,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.headers = headers or {}
        self._body = body

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FlaskSession:
    """A ``requests.Session`` look-alike that talks to a Flask test client.

    Cookies persist across calls, so login works like a real browser tab.
    """

    def __init__(self, app) -> None:
        self._client = app.test_client()
        self.calls: list[tuple[str, str]] = []

    def request(self, method: str, url: str, json: Any = None, timeout: float | None = None, **_: Any):
        path = urlsplit(url).path
        self.calls.append((method.upper(), path))
        resp = self._client.open(path, method=method.upper(), json=json)
        return FakeResponse(
            status_code=resp.status_code,
            body=_decode(resp.get_data()),
            headers=dict(resp.headers),
        )

    def get(self, url: str, **kwargs: Any):
        return self.request("GET", url, **kwargs)

    def head(self, url: str, **kwargs: Any):
        return self.request("HEAD", url, **kwargs)

    def post(self, url: str, **kwargs: Any):
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs: Any):
        return self.request("DELETE", url, **kwargs)


class ScriptedSession:
    """Returns (or raises) pre-programmed responses in order."""

    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, str, Any]] = []

    def request(self, method: str, url: str, json: Any = None, timeout: float | None = None, **_: Any):
        self.calls.append((method.upper(), url, json))
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def get(self, url: str, **kwargs: Any):
        return self.request("GET", url, **kwargs)

    def head(self, url: str, **kwargs: Any):
        return self.request("HEAD", url, **kwargs)

    def post(self, url: str, **kwargs: Any):
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs: Any):
        return self.request("DELETE", url, **kwargs)


def _decode(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------


def make_session(session_id: str, project: str = "General", description: str = "") -> dict[str, Any]:
    return {
        "id": session_id,
        "start": "2024-05-01T09:00:00Z",
        "end": "2024-05-01T10:00:00Z",
        "project": project,
        "description": description,
    }


def make_document(*session_ids: str, **kwargs: Any) -> dict[str, Any]:
    return {
        "sessions": [make_session(sid, **kwargs) for sid in session_ids],
        "projects": [{"name": "General", "color": "#3B82F6"}],
    }
