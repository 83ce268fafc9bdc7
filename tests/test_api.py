"""Tests for the control API."""

from __future__ import annotations

from typing import Iterator, List

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from fakes import FakeEngine, FakeGatewayClient
from viewer.api.server import create_app
from viewer.api.state import SessionRegistry
from viewer.config import ViewerConfig
from viewer.rtc import RenderSink
from viewer.session import ViewerSession


class FakeBackedRegistry(SessionRegistry):
    """Registry whose sessions talk to fakes instead of a gateway."""

    def __init__(self) -> None:
        super().__init__(
            ViewerConfig(server_url="wss://gw.example", mountpoint_id=5),
            session_factory=self._build,
        )
        self.clients: List[FakeGatewayClient] = []

    def _build(self, config: ViewerConfig) -> ViewerSession:
        client = FakeGatewayClient()
        self.clients.append(client)
        return ViewerSession(
            config,
            client=client,
            engine=FakeEngine(),
            sink_factory=lambda: RenderSink(drain=False),
        )


@pytest.fixture
def registry() -> FakeBackedRegistry:
    return FakeBackedRegistry()


@pytest.fixture
def client(registry: FakeBackedRegistry) -> Iterator[TestClient]:
    with TestClient(create_app(registry=registry)) as test_client:
        yield test_client


def test_app_keeps_an_empty_registry(registry: FakeBackedRegistry) -> None:
    assert len(registry) == 0
    app = create_app(registry=registry)

    assert app.state.registry is registry


class TestHealth:
    def test_healthz(self, client: TestClient) -> None:
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "profile": "default", "sessions": 0}

    def test_profiles(self, client: TestClient) -> None:
        response = client.get("/profiles")

        assert response.status_code == 200
        assert "default" in response.json()["profiles"]


class TestSessions:
    def test_open_list_and_close(self, client: TestClient, registry: FakeBackedRegistry) -> None:
        response = client.post("/sessions", json={"mountpointId": 9})
        assert response.status_code == 201
        body = response.json()
        assert body["mountpointId"] == 9
        assert body["serverUrl"] == "wss://gw.example"
        session_id = body["id"]

        listing = client.get("/sessions").json()
        assert [item["id"] for item in listing["sessions"]] == [session_id]
        assert client.get(f"/sessions/{session_id}").status_code == 200

        assert client.delete(f"/sessions/{session_id}").status_code == 204
        assert client.get(f"/sessions/{session_id}").status_code == 404
        assert registry.clients[0].closed
        assert client.get("/healthz").json()["sessions"] == 0

    def test_server_url_override(self, client: TestClient, registry: FakeBackedRegistry) -> None:
        response = client.post("/sessions", json={"serverUrl": " https://other.example/janus ", "mountpointId": 2})

        assert response.status_code == 201
        assert response.json()["serverUrl"] == "https://other.example/janus"

    def test_unknown_session(self, client: TestClient) -> None:
        assert client.get("/sessions/nope").status_code == 404
        assert client.delete("/sessions/nope").status_code == 404

    @pytest.mark.parametrize(
        "payload",
        [
            {"mountpointId": -1},
            {"serverUrl": "ftp://gw.example"},
            {"profile": "no-such-profile"},
        ],
    )
    def test_invalid_requests(self, client: TestClient, payload: dict) -> None:
        assert client.post("/sessions", json=payload).status_code == 422


class TestStatusStream:
    def test_streams_snapshots_until_watching(self, client: TestClient, registry: FakeBackedRegistry) -> None:
        session_id = client.post("/sessions", json={}).json()["id"]

        phases = []
        with client.websocket_connect(f"/sessions/{session_id}/status") as websocket:
            for _ in range(10):
                message = websocket.receive_json()
                phases.append(message["phase"])
                if message["phase"] == "watching":
                    break

        assert phases[-1] == "watching"
        assert message["status"]["text"] == "Requesting video stream..."
        handle = registry.clients[0].session.handle
        assert handle.requests("watch") == [({"request": "watch", "id": 5}, None)]

    def test_unknown_session_is_refused(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/sessions/nope/status") as websocket:
                websocket.receive_json()
