"""Shared fixtures: a store on tmp_path and the Flask app."""

from __future__ import annotations

from pathlib import Path

import pytest

from timetrack.auth.sessions import InMemorySessionStore
from timetrack.server.app import create_app
from timetrack.settings import Settings
from timetrack.store.document_store import DocumentStore


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(tmp_path / "data", lock_wait=2.0, lock_poll_interval=0.01)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(env="testing", data_dir=tmp_path / "data", username="admin", password="secret")


@pytest.fixture
def app(settings: Settings, store: DocumentStore):
    app = create_app(settings, store=store, sessions=InMemorySessionStore())
    app.config["TESTING"] = True
    return app


@pytest.fixture
def http(app):
    """Logged-in Flask test client."""
    client = app.test_client()
    resp = client.post("/api/auth/login", json={"username": "admin", "password": "secret"})
    assert resp.status_code == 200
    return client
