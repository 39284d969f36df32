"""WebSocket endpoint: registers clients with the broadcaster and handles room commands."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket

from ..realtime import ClientConnection, EventBroadcaster
from .deps import get_broadcaster

logger = logging.getLogger(__name__)

router = APIRouter()


def handle_client_message(
    broadcaster: EventBroadcaster, client: ClientConnection, raw: str
) -> None:
    """Apply one client frame; malformed frames are ignored."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("ignoring non-JSON frame from client %s", client.id)
        return
    if not isinstance(message, dict):
        logger.debug("ignoring non-object frame from client %s", client.id)
        return

    kind = message.get("type")
    room = message.get("room")
    if kind == "ping":
        broadcaster.send(client.id, "pong", {})
    elif kind in ("joinRoom", "leaveRoom"):
        if not isinstance(room, str) or not room:
            logger.debug("ignoring %s without a room from client %s", kind, client.id)
            return
        if kind == "joinRoom":
            broadcaster.join_room(client.id, room)
        else:
            broadcaster.leave_room(client.id, room)
    else:
        logger.debug("ignoring unknown frame type %r from client %s", kind, client.id)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    broadcaster = get_broadcaster(websocket)
    await websocket.accept()
    client = broadcaster.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.debug("client %s closed the socket", client.id)
                break
            raw = message.get("text")
            if raw is None:
                logger.debug("ignoring binary frame from client %s", client.id)
                continue
            handle_client_message(broadcaster, client, raw)
    finally:
        await broadcaster.disconnect(client.id)
