"""WebSocket fan-out: connection registry, rooms and per-client outboxes.

Every connection gets a bounded outbox drained by its own writer task, so a
slow client never blocks the router or other clients. Emission is
fire-and-forget: frames that do not fit are dropped and counted.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from ..metrics import RealtimeMetrics
from .events import DomainEvent, SocketEvent, encode_frame, user_room

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """The slice of a WebSocket the broadcaster writes to."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ClientConnection:
    """One registered client: its rooms, outbox and writer task."""

    def __init__(self, client_id: str, transport: Transport, capacity: int) -> None:
        self.id = client_id
        self.transport = transport
        self.rooms: Set[str] = set()
        self.outbox: "asyncio.Queue[str]" = asyncio.Queue(maxsize=capacity)
        self.writer: Optional[asyncio.Task] = None

    def offer(self, frame: str) -> bool:
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True


class EventBroadcaster:
    """Delivers typed events to connected WebSocket clients."""

    def __init__(
        self,
        *,
        outbox_capacity: int = 100,
        metrics: Optional[RealtimeMetrics] = None,
    ) -> None:
        if outbox_capacity <= 0:
            raise ValueError("outbox_capacity must be positive")
        self._capacity = outbox_capacity
        self._metrics = metrics
        self._clients: Dict[str, ClientConnection] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def clients(self) -> List[ClientConnection]:
        return list(self._clients.values())

    def initialize(self) -> None:
        self._initialized = True
        logger.info("Broadcaster initialized")

    async def close(self) -> None:
        """Stop accepting emits and disconnect every client."""
        self._initialized = False
        for client_id in list(self._clients):
            await self.disconnect(client_id)
        logger.info("Broadcaster closed")

    def connect(self, transport: Transport) -> ClientConnection:
        client = ClientConnection(uuid.uuid4().hex, transport, self._capacity)
        client.writer = asyncio.get_running_loop().create_task(
            self._drain(client), name=f"ws-writer-{client.id}"
        )
        self._clients[client.id] = client
        self._report_connections()
        logger.debug("WebSocket client %s connected", client.id)
        return client

    async def disconnect(self, client_id: str) -> None:
        client = self._clients.pop(client_id, None)
        if client is None:
            return
        self._report_connections()
        writer = client.writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        try:
            await client.transport.close()
        except Exception:  # noqa: BLE001 - the socket may already be gone
            logger.debug("Error closing WebSocket client %s", client_id, exc_info=True)
        logger.debug("WebSocket client %s disconnected", client_id)

    def join_room(self, client_id: str, room: str) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        client.rooms.add(room)
        logger.debug("Client %s joined room %s", client_id, room)
        return True

    def leave_room(self, client_id: str, room: str) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        client.rooms.discard(room)
        logger.debug("Client %s left room %s", client_id, room)
        return True

    def send(self, client_id: str, event: str, payload: Any) -> bool:
        """Queue a frame for a single client, bypassing rooms."""
        client = self._clients.get(client_id)
        if client is None:
            return False
        return self._deliver([client], event, payload) == 1

    def emit(self, event: SocketEvent, payload: Any) -> int:
        if not self._ready(event):
            return 0
        return self._deliver(self._clients.values(), event, payload)

    def emit_to_room(self, event: SocketEvent, payload: Any, room: str) -> int:
        if not self._ready(event):
            return 0
        targets = [c for c in self._clients.values() if room in c.rooms]
        return self._deliver(targets, event, payload)

    def emit_to_users(
        self, event: SocketEvent, payload: Any, user_ids: Iterable[Any]
    ) -> int:
        if not self._ready(event):
            return 0
        rooms = {user_room(user_id) for user_id in user_ids}
        targets = [c for c in self._clients.values() if c.rooms & rooms]
        return self._deliver(targets, event, payload)

    def publish(self, event: DomainEvent) -> int:
        return self.emit(event.name, event.payload)

    def _ready(self, event: SocketEvent) -> bool:
        if self._initialized:
            return True
        name = event.value if isinstance(event, SocketEvent) else event
        logger.warning("Broadcaster not initialized; dropping %s event", name)
        return False

    def _deliver(self, targets: Iterable[ClientConnection], event: Any, payload: Any) -> int:
        frame = encode_frame(event, payload)
        delivered = 0
        for client in targets:
            if client.offer(frame):
                delivered += 1
                continue
            logger.warning("Outbox full for client %s; dropping frame", client.id)
            if self._metrics is not None:
                self._metrics.inc_dropped()
        if self._metrics is not None:
            self._metrics.inc_frames(delivered)
        return delivered

    async def _drain(self, client: ClientConnection) -> None:
        while True:
            frame = await client.outbox.get()
            try:
                await client.transport.send_text(frame)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - isolate the failing client
                logger.warning(
                    "Send to WebSocket client %s failed; disconnecting",
                    client.id,
                    exc_info=True,
                )
                await self.disconnect(client.id)
                return

    def _report_connections(self) -> None:
        if self._metrics is not None:
            self._metrics.set_connections(len(self._clients))


__all__ = ["ClientConnection", "EventBroadcaster", "Transport"]
