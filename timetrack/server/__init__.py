"""HTTP route layer."""

from timetrack.server.app import create_app

__all__ = ["create_app"]
