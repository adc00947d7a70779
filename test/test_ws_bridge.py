import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from ws_bridge import main as bridge
from ws_bridge.registry import ConnectionRegistry


class FakeSocket:
    def __init__(self, broken=False):
        self.sent: list[str] = []
        self.broken = broken

    async def send_text(self, message: str) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(message)


class TestConnectionRegistry:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_room_members_only(self):
        registry = ConnectionRegistry()
        kitchen, table_7, table_8 = FakeSocket(), FakeSocket(), FakeSocket()
        await registry.join(kitchen, ["kitchen"])
        await registry.join(table_7, ["customer", "table:7"])
        await registry.join(table_8, ["customer", "table:8"])

        delivered = await registry.broadcast("table:7", "hello")

        assert delivered == 1
        assert table_7.sent == ["hello"]
        assert kitchen.sent == [] and table_8.sent == []

    @pytest.mark.asyncio
    async def test_leave_removes_from_every_room(self):
        registry = ConnectionRegistry()
        socket = FakeSocket()
        await registry.join(socket, ["customer", "table:7"])
        await registry.leave(socket)

        assert await registry.rooms_of(socket) == set()
        assert registry.counts() == {}
        assert await registry.broadcast("table:7", "hello") == 0

    @pytest.mark.asyncio
    async def test_dead_socket_is_dropped(self):
        registry = ConnectionRegistry()
        alive, dead = FakeSocket(), FakeSocket(broken=True)
        await registry.join(alive, ["kitchen"])
        await registry.join(dead, ["kitchen", "admin"])

        assert await registry.broadcast("kitchen", "update") == 1
        assert await registry.members("kitchen") == {alive}
        assert "admin" not in registry.counts()

    @pytest.mark.asyncio
    async def test_relay_maps_channel_to_room(self):
        registry = ConnectionRegistry()
        socket = FakeSocket()
        await registry.join(socket, ["table:3"])

        assert await bridge.relay_room_message(registry, f"{bridge.CHANNEL_PREFIX}:table:3", "msg") == 1
        assert await bridge.relay_room_message(registry, "other:table:3", "msg") == 0
        assert socket.sent == ["msg"]


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def bridge_client(registry, monkeypatch):
    async def verify_identity(token):
        return {"kitchen-token": {"role": "kitchen", "is_active": True}}.get(token)

    async def validate_table(table_id):
        return {"table_id": table_id, "valid": True} if table_id == 7 else None

    monkeypatch.setattr(bridge, "verify_identity", verify_identity)
    monkeypatch.setattr(bridge, "validate_table", validate_table)
    # One event loop for every socket in a test
    with TestClient(bridge.create_app(registry, listen=False)) as client:
        yield client


class TestWebSocketEndpoint:
    def test_staff_joins_role_room(self, bridge_client, registry):
        with bridge_client.websocket_connect("/ws?token=kitchen-token") as ws:
            hello = ws.receive_json()
            assert hello == {"event": "connected", "role": "kitchen", "rooms": ["kitchen"]}
            assert registry.counts() == {"kitchen": 1}
        assert registry.counts() == {}

    def test_customer_joins_table_room(self, bridge_client, registry):
        with bridge_client.websocket_connect("/ws?table_id=7") as ws:
            assert ws.receive_json()["rooms"] == ["customer", "table:7"]
            assert registry.counts() == {"customer": 1, "table:7": 1}

    def test_invalid_token_is_closed(self, bridge_client, registry):
        with bridge_client.websocket_connect("/ws?token=forged") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == bridge.POLICY_VIOLATION
        assert registry.counts() == {}

    def test_invalid_table_is_closed(self, bridge_client):
        with bridge_client.websocket_connect("/ws?table_id=99") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == bridge.POLICY_VIOLATION

    def test_ping(self, bridge_client):
        with bridge_client.websocket_connect("/ws?table_id=7") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "ping"}))
            assert ws.receive_json() == {"event": "pong"}

    def test_status_update_is_forwarded_with_connection_token(self, bridge_client, monkeypatch):
        calls = []

        async def forward(token, order_id, status):
            calls.append((token, order_id, status))
            return 200, {"id": order_id, "status": status}

        monkeypatch.setattr(bridge, "forward_status_update", forward)
        with bridge_client.websocket_connect("/ws?token=kitchen-token") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "update_order_status", "order_id": 5, "status": "preparing"}))
            reply = ws.receive_json()

        assert calls == [("kitchen-token", 5, "preparing")]
        assert reply == {"event": "status_update_accepted", "data": {"id": 5, "status": "preparing"}}

    def test_rejected_update_goes_to_sender_only(self, bridge_client, monkeypatch):
        async def forward(token, order_id, status):
            return 409, {"error": "InvalidState", "detail": "Cannot move order from placed to ready"}

        monkeypatch.setattr(bridge, "forward_status_update", forward)
        with bridge_client.websocket_connect("/ws?table_id=7") as bystander:
            bystander.receive_json()
            with bridge_client.websocket_connect("/ws?token=kitchen-token") as ws:
                ws.receive_json()
                ws.send_text(json.dumps({"type": "update_order_status", "order_id": 5, "status": "ready"}))
                reply = ws.receive_json()
            bystander.send_text(json.dumps({"type": "ping"}))
            # The next thing the bystander hears is its own pong, not the error
            assert bystander.receive_json() == {"event": "pong"}

        assert reply == {
            "event": "error",
            "error": "InvalidState",
            "detail": "Cannot move order from placed to ready",
            "order_id": 5,
        }

    def test_bad_messages(self, bridge_client):
        with bridge_client.websocket_connect("/ws?token=kitchen-token") as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json()["error"] == "InvalidInput"
            ws.send_text(json.dumps({"type": "update_order_status", "order_id": "five"}))
            assert ws.receive_json()["detail"] == "order_id and status are required"
            ws.send_text(json.dumps({"type": "dance"}))
            assert ws.receive_json()["detail"] == "Unknown message type: dance"

    def test_health_reports_rooms(self, bridge_client):
        with bridge_client.websocket_connect("/ws?token=kitchen-token") as ws:
            ws.receive_json()
            assert bridge_client.get("/health").json()["rooms"] == {"kitchen": 1}
