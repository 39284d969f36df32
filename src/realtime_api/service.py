"""Process lifecycle: migrations, broadcaster, CDC pipeline and the HTTP server."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Optional

from .cdc import CDCListenerService, build_cdc_listener
from .config import Settings, load_settings
from .db import ConnectionPool, connect_from_settings, pool_from_settings
from .db.users import UserRepository
from .metrics import RealtimeMetrics
from .migrations import MigrationRunner
from .realtime import EventBroadcaster

logger = logging.getLogger(__name__)


class LifecyclePhase(str, Enum):
    IDLE = "idle"
    MIGRATING = "migrating"
    BROADCASTER_READY = "broadcaster_ready"
    STREAM_STARTING = "stream_starting"
    RUNNING = "running"
    STOPPED = "stopped"


def run_migrations(settings: Settings) -> List[Any]:
    """Apply pending migrations over a dedicated connection."""
    conn = connect_from_settings(settings)
    try:
        return MigrationRunner(conn).apply()
    finally:
        conn.close()


class ServiceRuntime:
    """Coordinates schema migration, the broadcaster and the CDC listener.

    Startup order is migrations, then the broadcaster, then the replication
    stream. A migration failure aborts startup; anything that goes wrong with
    the CDC pipeline is logged and the service still reaches ``RUNNING``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        repository: Optional[UserRepository] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        metrics: Optional[RealtimeMetrics] = None,
        migrate: Optional[Callable[[Settings], Any]] = None,
        pool_factory: Callable[[Settings], ConnectionPool] = pool_from_settings,
        cdc_factory: Optional[Callable[..., CDCListenerService]] = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or RealtimeMetrics()
        self.broadcaster = broadcaster or EventBroadcaster(
            outbox_capacity=settings.ws_outbox_capacity, metrics=self.metrics
        )
        self.repository = repository
        self._migrate = migrate or run_migrations
        self._pool_factory = pool_factory
        self._cdc_factory = cdc_factory or build_cdc_listener
        self._pool: Optional[ConnectionPool] = None
        self._cdc: Optional[CDCListenerService] = None
        self.phase = LifecyclePhase.IDLE

    @property
    def cdc(self) -> Optional[CDCListenerService]:
        return self._cdc

    @property
    def running(self) -> bool:
        return self.phase is LifecyclePhase.RUNNING

    async def startup(self) -> None:
        if self.phase is not LifecyclePhase.IDLE:
            logger.debug("startup ignored in phase %s", self.phase.value)
            return

        self.phase = LifecyclePhase.MIGRATING
        if self.settings.run_migrations:
            try:
                executed = await asyncio.to_thread(self._migrate, self.settings)
            except Exception:
                logger.exception("database migration failed; aborting startup")
                self.phase = LifecyclePhase.STOPPED
                raise
            logger.info("migrations complete (%d applied)", len(executed or ()))
        else:
            logger.info("migrations disabled via configuration")

        if self.repository is None:
            self._pool = await asyncio.to_thread(self._pool_factory, self.settings)
            self.repository = UserRepository(self._pool)

        self.broadcaster.initialize()
        self.phase = LifecyclePhase.BROADCASTER_READY

        self.phase = LifecyclePhase.STREAM_STARTING
        self._start_cdc_listener()

        self.phase = LifecyclePhase.RUNNING
        logger.info("service running on %s:%s", self.settings.host, self.settings.port)

    def _start_cdc_listener(self) -> None:
        if not self.settings.cdc_enabled:
            logger.info("CDC listener disabled via configuration")
            return
        if not self.settings.cdc_active:
            logger.info("CDC listener skipped (APP_ENV=%s)", self.settings.app_env)
            return
        try:
            self._cdc = self._cdc_factory(
                self.settings,
                broadcaster=self.broadcaster,
                reader=self.repository,
                metrics=self.metrics,
            )
            self._cdc.start()
        except Exception as exc:  # noqa: BLE001 - CDC is best-effort
            logger.warning("unable to start CDC listener: %s", exc, exc_info=True)
            self._cdc = None
            return
        logger.info("CDC listener started")

    async def shutdown(self) -> None:
        if self.phase is LifecyclePhase.STOPPED:
            return
        if self._cdc is not None:
            try:
                await self._cdc.stop()
            except Exception:  # noqa: BLE001 - best effort
                logger.exception("failed to stop CDC listener cleanly")
            self._cdc = None
        await self.broadcaster.close()
        if self._pool is not None:
            self._pool.close()
            self._pool = None
        self.phase = LifecyclePhase.STOPPED
        logger.info("service stopped")


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    import uvicorn

    from .api import create_app

    settings = load_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
