"""CDC listener service wiring the stream client, router and broadcaster together."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Optional

from ..config import Settings
from ..metrics import RealtimeMetrics
from ..realtime.broadcaster import EventBroadcaster
from .decoding import ChangeDecoder
from .decoding import decoder_factory as default_decoder_factory
from .logical_replication import ConnectionState, LogicalReplicationClient, ReplicationStream
from .records import ChangeRecord
from .retry import ExponentialBackoff, RetryScheduler
from .router import ChangeRouter, RowReader, UserChangeHandler

logger = logging.getLogger(__name__)


class CDCListenerService:
    """Owns the change queue, the stream client and the router consumer task."""

    def __init__(
        self,
        *,
        client: LogicalReplicationClient,
        router: ChangeRouter,
        queue: "asyncio.Queue[ChangeRecord]",
        metrics: Optional[RealtimeMetrics] = None,
        drain_timeout: float = 5.0,
    ) -> None:
        self._client = client
        self._router = router
        self._queue = queue
        self._metrics = metrics
        self._drain_timeout = drain_timeout
        self._router_task: Optional[asyncio.Task] = None

    @property
    def client(self) -> LogicalReplicationClient:
        return self._client

    @property
    def router(self) -> ChangeRouter:
        return self._router

    @property
    def state(self) -> ConnectionState:
        return self._client.state

    @property
    def metrics(self) -> Optional[RealtimeMetrics]:
        return self._metrics

    def start(self) -> None:
        """Start the router consumer and the first connect attempt; returns at once."""
        if self._router_task is None or self._router_task.done():
            self._router_task = asyncio.get_running_loop().create_task(
                self._router.run(self._queue), name="cdc-router"
            )
        self._client.start()

    async def stop(self) -> None:
        await self._client.stop()
        task, self._router_task = self._router_task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), self._drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "CDC: %d change(s) still queued at shutdown; discarding",
                self._queue.qsize(),
            )
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


def build_cdc_listener(
    settings: Settings,
    *,
    broadcaster: EventBroadcaster,
    reader: RowReader,
    stream_factory: Optional[Callable[[], ReplicationStream]] = None,
    decoder_factory: Optional[Callable[[], ChangeDecoder]] = None,
    metrics: Optional[RealtimeMetrics] = None,
    sleep=asyncio.sleep,
) -> CDCListenerService:
    """Construct a CDC listener using application settings."""

    if stream_factory is None:
        from .stream import create_stream_factory

        stream_factory = create_stream_factory(settings)
    if decoder_factory is None:
        decoder_factory = default_decoder_factory(settings.cdc_replication_plugin)

    queue: "asyncio.Queue[ChangeRecord]" = asyncio.Queue(
        maxsize=settings.cdc_queue_capacity
    )
    backoff = ExponentialBackoff(
        base_interval=settings.cdc_retry_base_seconds,
        multiplier=2.0,
        max_interval=settings.cdc_retry_max_seconds,
        max_attempts=settings.cdc_retry_max_attempts or None,
    )
    scheduler = RetryScheduler(backoff, sleep=sleep)
    client = LogicalReplicationClient(
        slot_name=settings.cdc_slot,
        stream_factory=stream_factory,
        decoder_factory=decoder_factory,
        queue=queue,
        scheduler=scheduler,
        metrics=metrics,
    )
    handlers = {}
    if "users" in settings.cdc_tracked_tables:
        handlers["users"] = UserChangeHandler(reader)
    router = ChangeRouter(
        settings.cdc_tracked_tables,
        handlers,
        broadcaster.publish,
        metrics=metrics,
    )
    return CDCListenerService(client=client, router=router, queue=queue, metrics=metrics)


__all__ = ["CDCListenerService", "build_cdc_listener"]
