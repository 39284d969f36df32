"""Reconnect policy for the replication stream client."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class BackoffExhausted(RuntimeError):
    """Raised when the backoff policy has no further retries available."""


class ExponentialBackoff:
    """Exponential backoff helper with optional full jitter.

    ``delay = min(base_interval * multiplier ** attempt, max_interval)``

    `max_attempts` bounds the total number of consecutive connect attempts: the
    failure that brings `attempts` up to it raises `BackoffExhausted` instead of
    returning a delay.
    """

    def __init__(
        self,
        base_interval: float = 1.0,
        multiplier: float = 2.0,
        max_interval: float = 30.0,
        max_attempts: Optional[int] = 50,
        jitter: bool = False,
        random_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        if base_interval <= 0:
            raise ValueError("base_interval must be positive")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1.0")
        if max_interval < base_interval:
            raise ValueError("max_interval must be >= base_interval")
        self.base_interval = base_interval
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.max_attempts = max_attempts
        self.jitter = jitter
        self.random_fn = random_fn or random.random
        self._attempt = 0
        # First exponent whose raw delay reaches max_interval; None when flat.
        self._cap_attempt: Optional[int] = None
        if max_interval == base_interval:
            self._cap_attempt = 0
        elif multiplier > 1:
            self._cap_attempt = math.ceil(
                math.log(max_interval / base_interval, multiplier)
            )

    @property
    def attempts(self) -> int:
        return self._attempt

    def reset(self) -> None:
        self._attempt = 0

    def delay_for(self, attempt: int) -> float:
        if self._cap_attempt is None:
            return self.base_interval
        if attempt >= self._cap_attempt:
            return self.max_interval
        return min(self.base_interval * (self.multiplier**attempt), self.max_interval)

    def next_delay(self) -> float:
        """Record one failure and return the delay before the next attempt."""
        attempt = self._attempt
        self._attempt += 1
        if self.max_attempts is not None and self._attempt >= self.max_attempts:
            raise BackoffExhausted("retry attempts exhausted")
        raw = self.delay_for(attempt)
        if not self.jitter:
            return raw
        return self.random_fn() * raw


class RetryScheduler:
    """Schedules delayed restarts of the stream client on the running event loop.

    At most one retry is pending at a time. Once the backoff is exhausted no
    further retries are scheduled for the lifetime of the scheduler.
    """

    def __init__(
        self,
        backoff: ExponentialBackoff,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_exhausted: Optional[Callable[[], None]] = None,
    ) -> None:
        self._backoff = backoff
        self._sleep = sleep
        self._on_exhausted = on_exhausted
        self._pending: Optional[asyncio.Task] = None
        self._exhausted = False
        self.last_delay: Optional[float] = None

    @property
    def backoff(self) -> ExponentialBackoff:
        return self._backoff

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def schedule(self, start: Callable[[], None]) -> bool:
        """Queue a delayed call to `start`; returns False when nothing was scheduled."""
        if self._exhausted:
            return False
        if self.pending:
            logger.debug("CDC retry already pending; not scheduling another")
            return False
        try:
            delay = self._backoff.next_delay()
        except BackoffExhausted:
            self._exhausted = True
            logger.error(
                "CDC: max retries (%s) reached, giving up until restart",
                self._backoff.max_attempts,
            )
            if self._on_exhausted is not None:
                self._on_exhausted()
            return False
        self.last_delay = delay
        logger.info(
            "CDC: scheduling retry %d/%s in %.1fs",
            self._backoff.attempts,
            self._backoff.max_attempts or "inf",
            delay,
        )
        self._pending = asyncio.get_running_loop().create_task(
            self._fire(delay, start), name="cdc-retry"
        )
        return True

    def record_success(self) -> None:
        self._backoff.reset()
        self.last_delay = None

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def _fire(self, delay: float, start: Callable[[], None]) -> None:
        await self._sleep(delay)
        self._pending = None
        start()


__all__ = ["BackoffExhausted", "ExponentialBackoff", "RetryScheduler"]
