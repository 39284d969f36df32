"""Socket event names and frame encoding shared by the router and broadcaster."""

from __future__ import annotations

import datetime as _dt
import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping


class SocketEvent(str, Enum):
    USER_CREATED = "user-created"
    USER_UPDATED = "user-updated"
    USER_DELETED = "user-deleted"


@dataclass(frozen=True)
class DomainEvent:
    """A typed event ready for fan-out."""

    name: SocketEvent
    payload: Mapping[str, Any]


def user_room(user_id: Any) -> str:
    return f"user-{user_id}"


def _json_default(value: Any) -> Any:
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(payload: Any) -> str:
    return json.dumps(payload, default=_json_default)


def encode_frame(event: str, payload: Any) -> str:
    """Wire frame: the payload travels as a JSON string inside the envelope."""
    name = event.value if isinstance(event, SocketEvent) else str(event)
    return json.dumps({"event": name, "data": encode_payload(payload)})


__all__ = [
    "DomainEvent",
    "SocketEvent",
    "encode_frame",
    "encode_payload",
    "user_room",
]
