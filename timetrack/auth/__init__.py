"""Toy single-user authentication collaborators."""

from timetrack.auth.sessions import InMemorySessionStore, SessionStore, UserSession

__all__ = ["InMemorySessionStore", "SessionStore", "UserSession"]
