"""Prometheus metrics for the CDC pipeline and the WebSocket broadcaster."""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Enum, Gauge, generate_latest

CONNECTION_STATES = ["idle", "connecting", "subscribed", "failed"]


class RealtimeMetrics:
    """Counters and gauges bound to their own registry.

    Each instance owns a `CollectorRegistry` so several runtimes (tests, reloads)
    never collide on metric names; `/metrics` renders that registry.
    """

    def __init__(
        self,
        namespace: str = "realtime_api",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        cdc = f"{namespace}_cdc"
        ws = f"{namespace}_ws"
        self._records = Counter(
            f"{cdc}_records", "CDC change records decoded", registry=self.registry
        )
        self._filtered = Counter(
            f"{cdc}_filtered",
            "CDC change records discarded before dispatch",
            registry=self.registry,
        )
        self._events = Counter(
            f"{cdc}_events",
            "Domain events produced by the change router",
            ["event"],
            registry=self.registry,
        )
        self._errors = Counter(
            f"{cdc}_errors",
            "CDC processing errors",
            ["stage"],
            registry=self.registry,
        )
        self._reconnects = Counter(
            f"{cdc}_reconnects", "CDC reconnect attempts", registry=self.registry
        )
        self._state = Enum(
            f"{cdc}_connection_state",
            "Replication stream client state",
            states=CONNECTION_STATES,
            registry=self.registry,
        )
        self._clients = Gauge(
            f"{ws}_connections", "Open WebSocket connections", registry=self.registry
        )
        self._frames = Counter(
            f"{ws}_frames", "Frames queued for delivery", registry=self.registry
        )
        self._dropped = Counter(
            f"{ws}_dropped_frames",
            "Frames dropped because a client outbox was full",
            registry=self.registry,
        )

    def inc_records(self, amount: int = 1) -> None:
        if amount > 0:
            self._records.inc(amount)

    def inc_filtered(self) -> None:
        self._filtered.inc()

    def inc_events(self, event: str) -> None:
        self._events.labels(event=event).inc()

    def inc_errors(self, stage: str) -> None:
        self._errors.labels(stage=stage).inc()

    def inc_reconnects(self) -> None:
        self._reconnects.inc()

    def set_state(self, state: str) -> None:
        self._state.state(state)

    def set_connections(self, value: int) -> None:
        self._clients.set(value)

    def inc_frames(self, amount: int = 1) -> None:
        if amount > 0:
            self._frames.inc(amount)

    def inc_dropped(self) -> None:
        self._dropped.inc()

    def value(self, name: str, **labels: str) -> float:
        sample = self.registry.get_sample_value(name, labels or None)
        return sample or 0.0

    def render(self) -> bytes:
        return generate_latest(self.registry)


__all__ = ["CONNECTION_STATES", "RealtimeMetrics"]
