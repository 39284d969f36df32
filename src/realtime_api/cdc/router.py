"""Routes decoded change records to per-table handlers and on to the broadcaster."""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Protocol,
)

from ..metrics import RealtimeMetrics
from ..realtime.events import DomainEvent, SocketEvent
from .records import ChangeRecord, DeleteChange, InsertChange, UpdateChange

logger = logging.getLogger(__name__)


class RowReader(Protocol):
    """Authoritative read of the current `users` row."""

    def get_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]: ...


class ChangeHandler(Protocol):
    async def handle(self, change: ChangeRecord, row_id: int) -> Optional[DomainEvent]: ...


class UserChangeHandler:
    """Turns `users` changes into socket events.

    Inserts and updates re-read the row so clients always receive the full,
    current row (the replicated tuple can be missing unchanged TOAST columns
    and never passes through the safe-column projection). A row that vanished
    before the read produces no event. Deletes carry only the id.
    """

    def __init__(
        self,
        reader: RowReader,
        *,
        run_blocking: Callable[..., Awaitable[Any]] = asyncio.to_thread,
    ) -> None:
        self._reader = reader
        self._run_blocking = run_blocking

    async def handle(self, change: ChangeRecord, row_id: int) -> Optional[DomainEvent]:
        if isinstance(change, DeleteChange):
            return DomainEvent(SocketEvent.USER_DELETED, {"userId": row_id})

        user = await self._run_blocking(self._reader.get_user_by_id, row_id)
        if user is None:
            logger.debug("CDC: user %s no longer exists; skipping %s", row_id, change.operation)
            return None
        if isinstance(change, InsertChange):
            return DomainEvent(SocketEvent.USER_CREATED, {"user": user})
        if isinstance(change, UpdateChange):
            return DomainEvent(SocketEvent.USER_UPDATED, {"user": user})
        return None


def coerce_row_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class ChangeRouter:
    """Single consumer of the change queue; records are handled in arrival order."""

    def __init__(
        self,
        tracked_tables: Iterable[str],
        handlers: Mapping[str, ChangeHandler],
        sink: Callable[[DomainEvent], Any],
        *,
        metrics: Optional[RealtimeMetrics] = None,
        key_column: str = "id",
    ) -> None:
        self.tracked_tables = frozenset(tracked_tables)
        self._handlers = dict(handlers)
        self._sink = sink
        self._metrics = metrics
        self._key_column = key_column

    async def route(self, change: ChangeRecord) -> Optional[DomainEvent]:
        """Handle one record; never raises for per-record failures."""
        if change.table not in self.tracked_tables:
            if self._metrics is not None:
                self._metrics.inc_filtered()
            return None

        row_id = coerce_row_id(change.row_key(self._key_column))
        if row_id is None:
            logger.warning(
                "CDC: %s on %s.%s has no usable %s; skipping",
                change.operation,
                change.schema,
                change.table,
                self._key_column,
            )
            if self._metrics is not None:
                self._metrics.inc_filtered()
            return None

        handler = self._handlers.get(change.table)
        if handler is None:
            logger.debug("CDC: no handler registered for table %s", change.table)
            return None

        try:
            event = await handler.handle(change, row_id)
            if event is None:
                return None
            self._sink(event)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - one record must not stop the router
            logger.exception(
                "CDC: failed to handle %s for %s id=%s",
                change.operation,
                change.table,
                row_id,
            )
            if self._metrics is not None:
                self._metrics.inc_errors("handle")
            return None

        if self._metrics is not None:
            self._metrics.inc_events(event.name.value)
        logger.debug("CDC: emitted %s for id=%s", event.name.value, row_id)
        return event

    async def run(self, queue: "asyncio.Queue[ChangeRecord]") -> None:
        while True:
            change = await queue.get()
            try:
                await self.route(change)
            finally:
                queue.task_done()


__all__ = [
    "ChangeHandler",
    "ChangeRouter",
    "RowReader",
    "UserChangeHandler",
    "coerce_row_id",
]
