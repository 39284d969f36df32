"""Real-time fan-out of domain events to WebSocket clients."""

from .broadcaster import ClientConnection, EventBroadcaster, Transport
from .events import DomainEvent, SocketEvent, encode_frame, encode_payload, user_room

__all__ = [
    "ClientConnection",
    "DomainEvent",
    "EventBroadcaster",
    "SocketEvent",
    "Transport",
    "encode_frame",
    "encode_payload",
    "user_room",
]
