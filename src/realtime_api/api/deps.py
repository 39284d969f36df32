"""Request-scoped accessors for objects owned by the service runtime."""

from __future__ import annotations

from fastapi import HTTPException, Request, WebSocket

from ..db.users import UserRepository
from ..realtime import EventBroadcaster
from ..service import ServiceRuntime


def get_runtime(request: Request) -> ServiceRuntime:
    return request.app.state.runtime


def get_repository(request: Request) -> UserRepository:
    repository = get_runtime(request).repository
    if repository is None:
        raise HTTPException(status_code=503, detail="Database not ready")
    return repository


def get_broadcaster(websocket: WebSocket) -> EventBroadcaster:
    return websocket.app.state.runtime.broadcaster
