import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from realtime_api.api import create_app
from realtime_api.db.users import DuplicateEmail
from realtime_api.realtime import SocketEvent
from realtime_api.service import ServiceRuntime

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class InMemoryUserRepository:
    def __init__(self) -> None:
        self.rows: dict[int, dict] = {}
        self.next_id = 1
        self.healthy = True

    def _store(self, **values) -> dict:
        row = {"id": self.next_id, "created_at": NOW, "updated_at": NOW, **values}
        self.rows[self.next_id] = row
        self.next_id += 1
        return dict(row)

    def list_users(self):
        return [dict(row) for row in self.rows.values()]

    def get_user_by_id(self, user_id):
        row = self.rows.get(user_id)
        return dict(row) if row else None

    def create_user(self, payload):
        if any(row["email"] == payload.email for row in self.rows.values()):
            raise DuplicateEmail(f"email {payload.email!r} already exists")
        return self._store(
            email=payload.email, name=payload.name, role=payload.role, status="active"
        )

    def update_user(self, user_id, payload):
        row = self.rows.get(user_id)
        if row is None:
            return None
        changes = payload.changes()
        changes.pop("password", None)
        row.update(changes)
        return dict(row)

    def delete_user(self, user_id):
        return self.rows.pop(user_id, None) is not None

    def ping(self):
        if not self.healthy:
            raise RuntimeError("connection refused")
        return True


@pytest.fixture
def repository():
    return InMemoryUserRepository()


@pytest.fixture
def runtime(make_settings, repository):
    return ServiceRuntime(
        make_settings(app_env="test"),
        repository=repository,
        migrate=lambda _settings: [],
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


@pytest.mark.unit
def test_liveness(client):
    response = client.get("/ping/liveness")
    assert response.status_code == 200
    assert response.json() == {"message": "pong"}


@pytest.mark.unit
def test_readiness_reflects_database(client, repository):
    assert client.get("/ping/readiness").status_code == 200
    repository.healthy = False
    response = client.get("/ping/readiness")
    assert response.status_code == 503
    assert response.json() == {"message": "Database not ready"}


@pytest.mark.unit
def test_user_crud_round_trip(client):
    created = client.post(
        "/users",
        json={"email": "ada@example.com", "name": "Ada", "password": "secret"},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["role"] == "user"
    assert body["status"] == "active"
    assert "password" not in body
    user_id = body["id"]

    assert client.get(f"/users/{user_id}").json()["email"] == "ada@example.com"
    assert [u["id"] for u in client.get("/users").json()] == [user_id]

    updated = client.put(f"/users/{user_id}", json={"name": "Ada L.", "status": "inactive"})
    assert updated.status_code == 200
    assert updated.json()["name"] == "Ada L."
    assert updated.json()["status"] == "inactive"

    assert client.delete(f"/users/{user_id}").status_code == 204
    assert client.get(f"/users/{user_id}").status_code == 404
    assert client.delete(f"/users/{user_id}").status_code == 404
    assert client.put(f"/users/{user_id}", json={"name": "x"}).status_code == 404


@pytest.mark.unit
def test_create_user_validation(client):
    missing = client.post("/users", json={"email": "a@example.com", "name": "A"})
    assert missing.status_code == 422
    bad_role = client.post(
        "/users",
        json={"email": "a@example.com", "name": "A", "password": "p", "role": "root"},
    )
    assert bad_role.status_code == 422
    extra = client.post(
        "/users",
        json={"email": "a@example.com", "name": "A", "password": "p", "admin": True},
    )
    assert extra.status_code == 422


@pytest.mark.unit
def test_duplicate_email_conflict(client):
    payload = {"email": "dup@example.com", "name": "Dup", "password": "p"}
    assert client.post("/users", json=payload).status_code == 201
    response = client.post("/users", json=payload)
    assert response.status_code == 409
    assert "already exists" in response.json()["message"]


@pytest.mark.unit
def test_metrics_endpoint(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "realtime_api_ws_connections" in response.text


def _frame(raw: dict) -> tuple[str, object]:
    return raw["event"], json.loads(raw["data"])


@pytest.mark.unit
def test_websocket_ping_and_room_delivery(client, runtime):
    with client.websocket_connect("/ws") as ws:
        ws.send_text(json.dumps({"type": "ping"}))
        assert _frame(ws.receive_json()) == ("pong", {})

        ws.send_text("not json")
        ws.send_text(json.dumps({"type": "joinRoom", "room": "user-7"}))
        ws.send_text(json.dumps({"type": "ping"}))
        assert _frame(ws.receive_json()) == ("pong", {})

        delivered = client.portal.call(
            runtime.broadcaster.emit_to_users,
            SocketEvent.USER_UPDATED,
            {"user": {"id": 7}},
            [7],
        )
        assert delivered == 1
        assert _frame(ws.receive_json()) == ("user-updated", {"user": {"id": 7}})

        ws.send_text(json.dumps({"type": "leaveRoom", "room": "user-7"}))
        ws.send_text(json.dumps({"type": "ping"}))
        assert _frame(ws.receive_json()) == ("pong", {})
        delivered = client.portal.call(
            runtime.broadcaster.emit_to_room,
            SocketEvent.USER_DELETED,
            {"userId": 7},
            "user-7",
        )
        assert delivered == 0

        client.portal.call(
            runtime.broadcaster.emit, SocketEvent.USER_DELETED, {"userId": 7}
        )
        assert _frame(ws.receive_json()) == ("user-deleted", {"userId": 7})


@pytest.mark.unit
def test_websocket_ignores_binary_frames(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_bytes(b"\x00\x01binary")
        ws.send_text(json.dumps({"type": "ping"}))
        assert _frame(ws.receive_json()) == ("pong", {})
