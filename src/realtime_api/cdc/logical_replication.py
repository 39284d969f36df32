"""Replication stream client: connection lifecycle, decoding and hand-off.

The client owns exactly one replication session at a time. Decoded records
are put on an `asyncio.Queue` consumed by the change router; failures move the
client to ``FAILED`` and ask the retry scheduler for a delayed restart.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Protocol

from ..db import errorcodes
from ..metrics import RealtimeMetrics
from .decoding import ChangeDecoder
from .records import ChangeRecord, ReplicationStreamMessage
from .retry import RetryScheduler

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    FAILED = "failed"


class ReplicationStream(Protocol):
    """One replication session: handshake, message iteration and feedback."""

    async def open(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[ReplicationStreamMessage]: ...

    def acknowledge(self, lsn: int) -> None: ...

    async def close(self) -> None: ...


class StreamEnded(ConnectionError):
    """Raised when the server closes the replication stream without an error."""


def is_slot_in_use(exc: BaseException) -> bool:
    """True when the replication slot is held by another backend."""
    if getattr(exc, "pgcode", None) == errorcodes.OBJECT_IN_USE:
        return True
    return "is active for PID" in str(exc)


def int_to_lsn(value: int) -> str:
    upper = value >> 32
    lower = value & 0xFFFFFFFF
    return f"{upper:X}/{lower:X}"


class LogicalReplicationClient:
    """Coordinates the replication session and hands decoded changes to the router."""

    def __init__(
        self,
        slot_name: str,
        stream_factory: Callable[[], ReplicationStream],
        decoder_factory: Callable[[], ChangeDecoder],
        queue: "asyncio.Queue[ChangeRecord]",
        scheduler: RetryScheduler,
        metrics: Optional[RealtimeMetrics] = None,
    ) -> None:
        self.slot_name = slot_name
        self._stream_factory = stream_factory
        self._decoder_factory = decoder_factory
        self._queue = queue
        self._scheduler = scheduler
        self._metrics = metrics
        self._state = ConnectionState.IDLE
        self._stream: Optional[ReplicationStream] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._set_state(ConnectionState.IDLE)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> None:
        """Begin a connect attempt on the running loop; no-op while one is active."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.SUBSCRIBED):
            logger.debug("CDC: start ignored, client is %s", self._state.value)
            return
        if self._scheduler.exhausted:
            logger.warning("CDC: retry budget exhausted; restart the process to resume")
            return
        if self._state is ConnectionState.FAILED:
            backoff = self._scheduler.backoff
            logger.info(
                "CDC: retrying connection (attempt %d/%s)",
                backoff.attempts + 1,
                backoff.max_attempts or "inf",
            )
            if self._metrics is not None:
                self._metrics.inc_reconnects()
        else:
            logger.info("CDC: starting consumer on slot %s", self.slot_name)
        self._stopping = False
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="cdc-stream"
        )

    async def stop(self) -> None:
        """Cancel the session and any pending retry; safe to call repeatedly."""
        self._stopping = True
        self._scheduler.cancel()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        was_running = self._stream is not None
        await self._close_stream()
        if was_running:
            logger.info("CDC: consumer stopped")
        self._set_state(ConnectionState.IDLE)

    async def _run(self) -> None:
        try:
            stream = self._stream_factory()
            self._stream = stream
            await stream.open()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - classified and retried
            await self._fail(exc, subscribed=False)
            return

        self._set_state(ConnectionState.SUBSCRIBED)
        self._scheduler.record_success()
        logger.info("CDC: consumer subscribed to slot %s", self.slot_name)

        decoder = self._decoder_factory()
        try:
            async for message in stream:
                await self._dispatch(decoder, message)
                stream.acknowledge(message.lsn)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - classified and retried
            await self._fail(exc, subscribed=True)
            return
        await self._fail(StreamEnded("replication stream closed by server"), subscribed=True)

    async def _dispatch(
        self, decoder: ChangeDecoder, message: ReplicationStreamMessage
    ) -> None:
        try:
            records = decoder.decode(message)
        except Exception:  # noqa: BLE001 - one bad message must not end the stream
            logger.exception(
                "CDC: failed to decode message at %s", int_to_lsn(message.lsn)
            )
            if self._metrics is not None:
                self._metrics.inc_errors("decode")
            return
        for record in records:
            await self._queue.put(record)
        if self._metrics is not None:
            self._metrics.inc_records(len(records))

    async def _fail(self, exc: BaseException, *, subscribed: bool) -> None:
        self._set_state(ConnectionState.FAILED)
        await self._close_stream()
        if self._metrics is not None:
            self._metrics.inc_errors("stream" if subscribed else "subscribe")
        if is_slot_in_use(exc):
            logger.warning(
                "CDC: replication slot %s is held by another process; will retry",
                self.slot_name,
            )
        elif subscribed:
            logger.error("CDC: stream error: %s", exc, exc_info=exc)
        else:
            logger.error("CDC: failed to start consumer: %s", exc, exc_info=exc)
        if self._stopping:
            return
        self._scheduler.schedule(self.start)

    async def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            await stream.close()
        except Exception:  # noqa: BLE001 - best effort
            logger.debug("CDC: error while closing replication stream", exc_info=True)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        if self._metrics is not None:
            self._metrics.set_state(state.value)


__all__ = [
    "ConnectionState",
    "LogicalReplicationClient",
    "ReplicationStream",
    "StreamEnded",
    "int_to_lsn",
    "is_slot_in_use",
]
