"""HTTP and WebSocket surface of the realtime API."""

from .app import create_app

__all__ = ["create_app"]
