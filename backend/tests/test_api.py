import asyncio
import json
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import LOCAL_PEER_ID
from transfer.manager import TransferManager
from transfer.models import BatchProposal, Direction, FileEntry
from transfer.negotiator import PendingDecision


@pytest.fixture
def manager(tmp_path: Path) -> TransferManager:
    return TransferManager(str(tmp_path / "inbox"))


@pytest.fixture
def client(manager: TransferManager) -> TestClient:
    app = FastAPI()
    init_routes(manager)
    app.include_router(router)
    return TestClient(app)


def test_session_starts_disconnected(client: TestClient) -> None:
    response = client.get("/api/session")
    assert response.status_code == 200
    body = response.json()
    assert body["peer_id"] == LOCAL_PEER_ID
    assert body["state"] == "disconnected"
    assert body["remote_peer_id"] is None


def test_batch_needs_files_and_a_peer(client: TestClient, tmp_path: Path) -> None:
    response = client.post("/api/batch", json={"file_paths": [str(tmp_path / "missing")]})
    assert response.status_code == 400

    real = tmp_path / "real.txt"
    real.write_text("hello")
    response = client.post("/api/batch", json={"file_paths": [str(real)]})
    assert response.status_code == 400
    assert "Not connected" in response.json()["detail"]


def test_nothing_pending_without_a_request(client: TestClient) -> None:
    assert client.get("/api/batch/pending").json() == {"pending": None}
    response = client.post("/api/batch/pending/decision", json={"accepted_files": ["a.txt"]})
    assert response.status_code == 409
    response = client.post("/api/batch/pending/select", json={"name": "a.txt", "accepted": True})
    assert response.status_code == 409


def test_selection_routes_edit_the_pending_request(
    client: TestClient, manager: TransferManager
) -> None:
    assert client.post("/api/batch/pending/toggle", json={"name": "a.txt"}).status_code == 409
    assert client.post("/api/batch/pending/select-all", json={"accepted": True}).status_code == 409

    proposal = BatchProposal(
        files=(FileEntry(name="a.txt", size=1), FileEntry(name="b.txt", size=2)),
        total_count=2,
    )
    manager._session = SimpleNamespace(pending=PendingDecision(proposal), closed=False)

    response = client.post("/api/batch/pending/toggle", json={"name": "a.txt"})
    assert response.json() == {"selected": ["b.txt"]}
    response = client.post("/api/batch/pending/select-all", json={"accepted": False})
    assert response.json() == {"selected": []}
    response = client.post("/api/batch/pending/select-all", json={"accepted": True})
    assert response.json() == {"selected": ["a.txt", "b.txt"]}
    assert client.get("/api/batch/pending").json()["pending"]["selected"] == ["a.txt", "b.txt"]

    response = client.post("/api/batch/pending/toggle", json={"name": "zzz"})
    assert response.status_code == 400


def test_connect_failure_maps_to_bad_gateway(client: TestClient, manager: TransferManager) -> None:
    # Grab a port nobody listens on
    async def free_port() -> int:
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()
        return port

    port = asyncio.run(free_port())
    response = client.post("/api/connect", json={"host": "127.0.0.1", "port": port})
    assert response.status_code == 502
    assert client.get("/api/session").json()["status"] == "Connection Failed"

    assert client.post("/api/connect", json={"host": "127.0.0.1", "port": 0}).status_code == 422


def test_history_listing_and_clearing(client: TestClient, manager: TransferManager) -> None:
    asyncio.run(manager.history.append("a.txt", Direction.RECEIVED))
    asyncio.run(manager.history.append("b.txt", Direction.SENT))

    history = client.get("/api/history").json()["history"]
    assert [(h["name"], h["direction"]) for h in history] == [
        ("b.txt", "Sent"),
        ("a.txt", "Received"),
    ]
    assert client.delete("/api/history").json() == {"status": "cleared"}
    assert client.get("/api/history").json() == {"history": []}


def test_settings_update_save_dir(client: TestClient, tmp_path: Path) -> None:
    settings = client.get("/api/settings").json()
    assert settings["save_dir"] == str(tmp_path / "inbox")
    assert settings["peer_id"] == LOCAL_PEER_ID

    target = tmp_path / "elsewhere" / "nested"
    response = client.put("/api/settings", json={"save_dir": str(target)})
    assert response.status_code == 200
    assert target.is_dir()
    assert client.get("/api/settings").json()["save_dir"] == str(target)


def test_disconnect_without_session(client: TestClient) -> None:
    assert client.post("/api/disconnect").json() == {"status": "disconnected"}


def test_websocket_sends_snapshot_on_connect() -> None:
    import main

    with TestClient(main.app) as app_client:
        with app_client.websocket_connect("/ws") as ws:
            message = ws.receive_json()
            ws.send_text("snapshot")
            again = ws.receive_json()
    assert message["event"] == "session_state"
    assert message["data"]["peer_id"] == LOCAL_PEER_ID
    assert message["data"]["state"] == "disconnected"
    assert message["data"]["status"] == "Ready to Share"
    assert again == message


class _FakeSocket:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.accepted = False
        self.sent: list[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


async def test_broadcast_drops_failed_clients() -> None:
    hub = ConnectionManager(send_timeout=1)
    good, bad = _FakeSocket(), _FakeSocket()
    await hub.connect(good, {"state": "idle"})
    await hub.connect(bad)
    assert good.sent == [{"event": "session_state", "data": {"state": "idle"}}]
    assert hub.client_count == 2

    bad.fail = True
    await hub.handle_event("status", {"message": "Sending..."})
    assert hub.client_count == 1
    assert good.sent[-1] == {"event": "status", "data": {"message": "Sending..."}}

    hub.disconnect(good)
    assert hub.client_count == 0
