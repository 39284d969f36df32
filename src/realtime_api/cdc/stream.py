"""psycopg2-backed replication session used in production.

The handshake (publication/slot bootstrap, ``START_REPLICATION``) runs in a
worker thread; messages are then read with the non-blocking
``read_message()`` while the event loop watches the connection socket.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional

from ..config import Settings
from ..db import LogicalReplicationConnection, connect, errors, replication_dsn, sql
from .logical_replication import int_to_lsn
from .records import ReplicationStreamMessage

logger = logging.getLogger(__name__)


class PsycopgReplicationStream:
    """One logical replication session over a psycopg2 replication connection."""

    def __init__(
        self,
        dsn: str,
        *,
        slot_name: str,
        publication: str,
        plugin: str = "pgoutput",
        tables: Iterable[str] = (),
        ack_interval_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dsn = dsn
        self._slot_name = slot_name
        self._publication = publication
        self._plugin = plugin
        self._tables = tuple(sorted(tables))
        self._ack_interval = ack_interval_seconds
        self._clock = clock
        self._conn = None
        self._cursor = None
        self._flush_lsn = 0
        self._last_feedback = clock()
        # Guards the hand-over of a connection opened in the worker thread.
        self._lock = threading.Lock()
        self._closed = False

    async def open(self) -> None:
        await asyncio.to_thread(self._open_blocking)

    def _open_blocking(self) -> None:
        self._ensure_replication_objects()
        conn = LogicalReplicationConnection.connect(self._dsn)
        try:
            cursor = conn.cursor()
            options: Dict[str, str] = {}
            if self._plugin == "pgoutput":
                options = {
                    "proto_version": "1",
                    "publication_names": self._publication,
                }
            cursor.start_replication(
                slot_name=self._slot_name, decode=False, options=options or None
            )
        except Exception:
            conn.close()
            raise
        with self._lock:
            if not self._closed:
                self._conn = conn
                self._cursor = cursor
                self._last_feedback = self._clock()
                return
        # close() ran while the handshake was in flight.
        logger.debug("CDC: stream closed during handshake; releasing connection")
        try:
            cursor.close()
        finally:
            conn.close()

    def _ensure_replication_objects(self) -> None:
        """Create the publication and slot when they are missing."""
        conn = connect(self._dsn)
        try:
            if self._plugin == "pgoutput" and self._tables:
                exists = conn.execute(
                    "SELECT 1 FROM pg_publication WHERE pubname = %s",
                    (self._publication,),
                ).fetchone()
                if exists is None:
                    conn.execute(
                        sql.SQL("CREATE PUBLICATION {} FOR TABLE {}").format(
                            sql.Identifier(self._publication),
                            sql.SQL(", ").join(
                                sql.Identifier(table) for table in self._tables
                            ),
                        )
                    )
                    logger.info("CDC: created publication %s", self._publication)
            exists = conn.execute(
                "SELECT 1 FROM pg_replication_slots WHERE slot_name = %s",
                (self._slot_name,),
            ).fetchone()
            if exists is None:
                try:
                    conn.execute(
                        "SELECT pg_create_logical_replication_slot(%s, %s)",
                        (self._slot_name, self._plugin),
                    )
                    logger.info("CDC: created replication slot %s", self._slot_name)
                except errors.DuplicateObject:
                    logger.debug("CDC: slot %s created concurrently", self._slot_name)
        finally:
            conn.close()

    def __aiter__(self) -> "PsycopgReplicationStream":
        return self

    async def __anext__(self) -> ReplicationStreamMessage:
        while True:
            cursor = self._cursor
            if cursor is None:
                raise StopAsyncIteration
            message = cursor.read_message()
            if message is not None:
                send_time = getattr(message, "send_time", None)
                return ReplicationStreamMessage(
                    lsn=int(message.data_start),
                    data=bytes(message.payload),
                    commit_timestamp=(
                        send_time.timestamp() if send_time is not None else time.time()
                    ),
                )
            self._send_status_if_due()
            await self._wait_readable(self._seconds_until_feedback())

    def acknowledge(self, lsn: int) -> None:
        if lsn > self._flush_lsn:
            self._flush_lsn = lsn
        self._send_status_if_due()

    def _seconds_until_feedback(self) -> float:
        elapsed = self._clock() - self._last_feedback
        return max(self._ack_interval - elapsed, 0.05)

    def _send_status_if_due(self) -> None:
        if self._cursor is None:
            return
        if self._clock() - self._last_feedback < self._ack_interval:
            return
        self._cursor.send_feedback(flush_lsn=self._flush_lsn)
        self._last_feedback = self._clock()
        logger.debug("CDC: acknowledged up to %s", int_to_lsn(self._flush_lsn))

    async def _wait_readable(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        fileno = self._conn.fileno()

        def _ready() -> None:
            if not waiter.done():
                waiter.set_result(None)

        loop.add_reader(fileno, _ready)
        try:
            await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            loop.remove_reader(fileno)

    async def close(self) -> None:
        with self._lock:
            self._closed = True
            cursor, self._cursor = self._cursor, None
            conn, self._conn = self._conn, None
        if cursor is not None and self._flush_lsn:
            try:
                cursor.send_feedback(flush_lsn=self._flush_lsn, force=True)
            except Exception:  # noqa: BLE001 - connection may already be gone
                logger.debug("CDC: final feedback failed", exc_info=True)
        try:
            if cursor is not None:
                cursor.close()
        finally:
            if conn is not None:
                conn.close()


def create_stream_factory(
    settings: Settings,
    *,
    tables: Optional[Iterable[str]] = None,
) -> Callable[[], PsycopgReplicationStream]:
    """Build a factory producing a fresh replication session per connect attempt."""

    dsn = replication_dsn(settings)
    tracked = tuple(tables if tables is not None else settings.cdc_tracked_tables)

    def _factory() -> PsycopgReplicationStream:
        return PsycopgReplicationStream(
            dsn,
            slot_name=settings.cdc_slot,
            publication=settings.cdc_publication,
            plugin=settings.cdc_replication_plugin,
            tables=tracked,
            ack_interval_seconds=settings.cdc_ack_interval_seconds,
        )

    return _factory


__all__ = ["PsycopgReplicationStream", "create_stream_factory"]
