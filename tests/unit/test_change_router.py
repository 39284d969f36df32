import asyncio
from typing import Any, Dict, Optional

import pytest

from realtime_api.cdc.records import DeleteChange, InsertChange, UpdateChange
from realtime_api.cdc.router import ChangeRouter, UserChangeHandler, coerce_row_id
from realtime_api.metrics import RealtimeMetrics
from realtime_api.realtime.events import DomainEvent, SocketEvent


class StubUserReader:
    def __init__(self, rows: Optional[Dict[int, Dict[str, Any]]] = None) -> None:
        self.rows = dict(rows or {})
        self.reads: list[int] = []

    def get_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]:
        self.reads.append(user_id)
        row = self.rows.get(user_id)
        return dict(row) if row else None


class ExplodingReader:
    def get_user_by_id(self, user_id: int):
        raise RuntimeError("connection lost")


async def _inline(fn, *args):
    return fn(*args)


def _user(user_id: int, **overrides) -> Dict[str, Any]:
    row = {
        "id": user_id,
        "email": f"user{user_id}@example.com",
        "name": "Test User",
        "role": "user",
        "status": "active",
    }
    row.update(overrides)
    return row


def _router(reader, events, *, tracked=("users",), metrics=None) -> ChangeRouter:
    handler = UserChangeHandler(reader, run_blocking=_inline)
    return ChangeRouter(tracked, {"users": handler}, events.append, metrics=metrics)


def _insert(row_id, table="users"):
    return InsertChange(schema="public", table=table, new_row={"id": row_id})


@pytest.mark.unit
def test_untracked_tables_are_discarded_without_side_effects():
    reader = StubUserReader({1: _user(1)})
    events: list[DomainEvent] = []
    metrics = RealtimeMetrics()
    router = _router(reader, events, metrics=metrics)

    result = asyncio.run(router.route(_insert(1, table="orders")))

    assert result is None
    assert events == []
    assert reader.reads == []
    assert metrics.value("realtime_api_cdc_filtered_total") == 1


@pytest.mark.unit
def test_insert_for_missing_row_emits_nothing():
    reader = StubUserReader()
    events: list[DomainEvent] = []
    router = _router(reader, events)

    assert asyncio.run(router.route(_insert(99))) is None
    assert events == []
    assert reader.reads == [99]


@pytest.mark.unit
def test_delete_carries_only_the_id_and_skips_the_read():
    reader = StubUserReader()
    events: list[DomainEvent] = []
    router = _router(reader, events)
    change = DeleteChange(
        schema="public", table="users", old_row={"id": 5, "email": "gone@example.com"}
    )

    asyncio.run(router.route(change))

    assert events == [DomainEvent(SocketEvent.USER_DELETED, {"userId": 5})]
    assert reader.reads == []


@pytest.mark.unit
def test_insert_update_delete_lifecycle_for_one_user():
    reader = StubUserReader({42: _user(42)})
    events: list[DomainEvent] = []
    metrics = RealtimeMetrics()
    router = _router(reader, events, metrics=metrics)

    async def scenario():
        await router.route(_insert(42))
        reader.rows[42] = _user(42, name="Renamed")
        # The replicated tuple is partial; the emitted row comes from the re-read.
        await router.route(
            UpdateChange(schema="public", table="users", new_row={"id": 42})
        )
        del reader.rows[42]
        await router.route(
            DeleteChange(schema="public", table="users", old_row={"id": 42})
        )

    asyncio.run(scenario())

    assert [event.name for event in events] == [
        SocketEvent.USER_CREATED,
        SocketEvent.USER_UPDATED,
        SocketEvent.USER_DELETED,
    ]
    assert events[0].payload == {"user": _user(42)}
    assert events[1].payload["user"]["name"] == "Renamed"
    assert events[2].payload == {"userId": 42}
    assert metrics.value("realtime_api_cdc_events_total", event="user-created") == 1
    assert metrics.value("realtime_api_cdc_events_total", event="user-deleted") == 1


@pytest.mark.unit
def test_unresolvable_id_is_skipped_with_warning(caplog):
    reader = StubUserReader()
    events: list[DomainEvent] = []
    router = _router(reader, events)

    with caplog.at_level("WARNING"):
        asyncio.run(
            router.route(InsertChange(schema="public", table="users", new_row={"email": "x"}))
        )

    assert events == []
    assert reader.reads == []
    assert "no usable id" in caplog.text


@pytest.mark.unit
def test_handler_errors_are_counted_and_do_not_escape(caplog):
    events: list[DomainEvent] = []
    metrics = RealtimeMetrics()
    router = _router(ExplodingReader(), events, metrics=metrics)

    with caplog.at_level("ERROR"):
        result = asyncio.run(router.route(_insert(3)))

    assert result is None
    assert events == []
    assert metrics.value("realtime_api_cdc_errors_total", stage="handle") == 1
    assert "failed to handle insert for users id=3" in caplog.text


@pytest.mark.unit
def test_sink_errors_do_not_escape():
    reader = StubUserReader({1: _user(1)})

    def failing_sink(_event):
        raise RuntimeError("sink down")

    handler = UserChangeHandler(reader, run_blocking=_inline)
    router = ChangeRouter({"users"}, {"users": handler}, failing_sink)

    assert asyncio.run(router.route(_insert(1))) is None


@pytest.mark.unit
def test_run_consumes_queue_in_order_and_survives_failures():
    reader = StubUserReader({1: _user(1), 3: _user(3)})
    events: list[DomainEvent] = []
    router = _router(reader, events)

    async def scenario():
        queue: asyncio.Queue = asyncio.Queue()
        for change in (_insert(1), _insert(2), _insert("3"), _insert(1, table="audit")):
            queue.put_nowait(change)
        task = asyncio.create_task(router.run(queue))
        await queue.join()
        task.cancel()

    asyncio.run(scenario())

    assert [event.payload["user"]["id"] for event in events] == [1, 3]
    assert reader.reads == [1, 2, 3]


@pytest.mark.unit
@pytest.mark.parametrize(
    "value, expected",
    [(7, 7), ("8", 8), (" 9 ", 9), (None, None), (True, None), ("abc", None)],
)
def test_coerce_row_id(value, expected):
    assert coerce_row_id(value) == expected
