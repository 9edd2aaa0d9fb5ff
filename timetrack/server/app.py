"""Flask routes exposing the document store to browser clients."""

from __future__ import annotations

import logging
import secrets
from typing import Any

from flask import Flask, Response, jsonify, make_response, request
from pydantic import ValidationError

from timetrack.auth.sessions import InMemorySessionStore, SessionStore
from timetrack.config import SESSION_COOKIE, SESSION_DURATION, VERSION_HEADER
from timetrack.models.document import Session, TimeTrackerData
from timetrack.settings import Settings
from timetrack.store.document_store import DocumentStore
from timetrack.store.results import SaveResult

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    sessions: SessionStore | None = None,
) -> Flask:
    """Build the web app.

    Parameters
    ----------
    settings:
        Loaded configuration; defaults to :class:`Settings` defaults.
    store:
        Document store; built from *settings* when omitted.
    sessions:
        Login session store; a fresh in-memory store when omitted.
    """
    if settings is None:
        settings = Settings()
    if store is None:
        store = DocumentStore.from_settings(settings)
    if sessions is None:
        sessions = InMemorySessionStore()

    app = Flask(__name__)
    app.config["TIMETRACK_SETTINGS"] = settings
    app.extensions["timetrack_store"] = store
    app.extensions["timetrack_sessions"] = sessions

    def current_user() -> str | None:
        session_id = request.cookies.get(SESSION_COOKIE)
        if not session_id:
            return None
        session = sessions.validate(session_id)
        return session.user_id if session else None

    def unauthorized() -> tuple[Response, int]:
        return jsonify({"error": "Unauthorized"}), 401

    # -- auth -------------------------------------------------------------------

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        body = request.get_json(silent=True) or {}
        username = str(body.get("username", ""))
        password = str(body.get("password", ""))
        valid = secrets.compare_digest(
            username.encode(), settings.username.encode(),
        ) and secrets.compare_digest(password.encode(), settings.password.encode())
        if not valid:
            logger.info("Rejected login for %r", username)
            return jsonify({"success": False, "message": "Invalid credentials"}), 401

        session_id = sessions.create(username)
        response = jsonify({"success": True, "message": "Login successful"})
        response.set_cookie(
            SESSION_COOKIE, session_id,
            max_age=SESSION_DURATION, path="/", httponly=True, samesite="Strict",
        )
        return response

    @app.route("/api/auth/logout", methods=["POST"])
    def logout():
        session_id = request.cookies.get(SESSION_COOKIE)
        if session_id:
            sessions.invalidate(session_id)
        response = jsonify({"success": True, "message": "Logout successful"})
        response.set_cookie(SESSION_COOKIE, "", max_age=0, path="/", httponly=True, samesite="Strict")
        return response

    # -- versioned document ---------------------------------------------------

    @app.route("/api/data", methods=["GET", "HEAD"])
    def get_data():
        user_id = current_user()
        if user_id is None:
            return unauthorized()

        if request.method == "HEAD":
            response = make_response("", 200)
            response.headers[VERSION_HEADER] = str(store.get_version(user_id))
            return response

        result = store.load(user_id)
        if not result.success or result.data is None:
            return jsonify({"error": result.error or "Failed to load data"}), 500

        body = result.data.to_json()
        body["_version"] = result.version
        response = jsonify(body)
        response.headers[VERSION_HEADER] = str(result.version)
        return response

    @app.route("/api/data", methods=["POST"])
    def save_data():
        user_id = current_user()
        if user_id is None:
            return unauthorized()

        body = request.get_json(silent=True)
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            return jsonify({"error": "Data required"}), 400

        expected = body.get("expectedVersion")
        if expected is not None and (isinstance(expected, bool) or not isinstance(expected, int)):
            return jsonify({"error": "expectedVersion must be an integer"}), 400

        client_id = str(body.get("clientId") or "unknown")
        result = store.save(user_id, body["data"], client_id, expected)
        return _save_response(result)

    @app.route("/api/clients", methods=["GET"])
    def active_clients():
        user_id = current_user()
        if user_id is None:
            return unauthorized()
        clients = store.get_active_clients(user_id)
        return jsonify({"clients": clients, "count": len(clients)})

    # -- running timer --------------------------------------------------------

    @app.route("/api/current-session", methods=["GET"])
    def get_current_session():
        user_id = current_user()
        if user_id is None:
            return unauthorized()
        result = store.load(user_id)
        if not result.success or result.data is None:
            return jsonify({"error": "Failed to load current session"}), 500
        current = result.data.current_session
        return jsonify({
            "currentSession": (
                current.model_dump(mode="json", by_alias=True, exclude_none=True)
                if current else None
            ),
        })

    @app.route("/api/current-session", methods=["POST"])
    def set_current_session():
        user_id = current_user()
        if user_id is None:
            return unauthorized()
        body = request.get_json(silent=True) or {}
        raw = body.get("currentSession")
        try:
            session = Session.model_validate(raw) if raw else None
        except ValidationError as exc:
            return jsonify({"error": f"Invalid session: {exc}"}), 400

        result = store.update(
            user_id, lambda data: _with_current(data, session), f"current-session-{user_id}",
        )
        return _save_response(result)

    @app.route("/api/current-session", methods=["DELETE"])
    def clear_current_session():
        user_id = current_user()
        if user_id is None:
            return unauthorized()
        result = store.update(
            user_id, lambda data: _with_current(data, None), f"clear-session-{user_id}",
        )
        return _save_response(result)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    return app


def _with_current(data: TimeTrackerData, session: Session | None) -> TimeTrackerData:
    return data.model_copy(update={"current_session": session})


def _save_response(result: SaveResult) -> Any:
    if result.success:
        response = jsonify({"success": True, "version": result.version})
        response.headers[VERSION_HEADER] = str(result.version)
        return response
    if result.conflict:
        return jsonify({
            "error": result.error or "Version conflict",
            "actualVersion": result.version,
            "currentData": result.data.to_json() if result.data else None,
        }), 409
    if result.reason == "invalid":
        return jsonify({"error": result.error}), 400
    return jsonify({"error": result.error or "Failed to save data"}), 500
