"""Tests for the relay and signaling API."""

import pytest
from fastapi.testclient import TestClient

from sidechat import api
from sidechat.api import RoomHub, SignalRegistry, app, format_sse


@pytest.fixture
def client():
    """Create test client."""
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


def wire(room_id="room-1", sender_id="peer-a", text="hi", mid="m1"):
    return {
        "mid": mid,
        "room_id": room_id,
        "sender_id": sender_id,
        "display_name": "Ann",
        "text": text,
        "timestamp": 1000,
    }


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_timing_header(self, client):
        response = client.get("/health")
        assert "X-Response-Time-Ms" in response.headers

    def test_metrics(self, client):
        client.post("/rooms/room-1/join", json={"peer_id": "peer-a"})
        data = client.get("/metrics").json()
        assert data["relay"] == {"rooms": 1, "members": 1}
        assert data["requests"]["rooms/join"]["count"] == 1


class TestMembership:
    def test_join_lists_members(self, client):
        first = client.post("/rooms/room-1/join", json={"peer_id": "peer-a", "display_name": "Ann"})
        assert first.status_code == 200
        assert first.json() == {"room_id": "room-1", "members": [{"peer_id": "peer-a", "display_name": "Ann"}]}

        second = client.post("/rooms/room-1/join", json={"peer_id": "peer-b"})
        peers = [m["peer_id"] for m in second.json()["members"]]
        assert sorted(peers) == ["peer-a", "peer-b"]

    def test_display_name_sanitized(self, client):
        response = client.post("/rooms/room-1/join", json={"peer_id": "peer-a", "display_name": "<b></b>"})
        assert response.json()["members"][0]["display_name"] == "Anonymous"

    def test_leave(self, client):
        client.post("/rooms/room-1/join", json={"peer_id": "peer-a"})
        assert client.post("/rooms/room-1/leave", json={"peer_id": "peer-a"}).json() == {"ok": True}
        assert client.get("/rooms/room-1/members").json()["members"] == []
        assert client.post("/rooms/room-1/leave", json={"peer_id": "peer-a"}).json() == {"ok": False}

    def test_join_requires_peer_id(self, client):
        response = client.post("/rooms/room-1/join", json={"peer_id": ""})
        assert response.status_code == 422


class TestMessages:
    def test_requires_membership(self, client):
        response = client.post("/rooms/room-1/messages", json={"peer_id": "peer-a", "message": wire()})
        assert response.status_code == 403

    def test_room_mismatch(self, client):
        client.post("/rooms/room-1/join", json={"peer_id": "peer-a"})
        response = client.post(
            "/rooms/room-1/messages", json={"peer_id": "peer-a", "message": wire(room_id="room-2")}
        )
        assert response.status_code == 400

    def test_sender_mismatch(self, client):
        client.post("/rooms/room-1/join", json={"peer_id": "peer-a"})
        response = client.post(
            "/rooms/room-1/messages", json={"peer_id": "peer-a", "message": wire(sender_id="peer-x")}
        )
        assert response.status_code == 400

    def test_no_listeners(self, client):
        client.post("/rooms/room-1/join", json={"peer_id": "peer-a"})
        client.post("/rooms/room-1/join", json={"peer_id": "peer-b"})
        response = client.post("/rooms/room-1/messages", json={"peer_id": "peer-a", "message": wire()})
        assert response.status_code == 200
        # peer-b joined but has no event stream attached
        assert response.json() == {"mid": "m1", "delivered": 0}

    def test_mid_filled_in(self, client):
        client.post("/rooms/room-1/join", json={"peer_id": "peer-a"})
        message = wire()
        del message["mid"]
        response = client.post("/rooms/room-1/messages", json={"peer_id": "peer-a", "message": message})
        assert response.status_code == 200
        assert response.json()["mid"]


class TestSignaling:
    def test_register_list_unregister(self, client):
        response = client.put("/signal/room-1/peers/peer-a", json={"address": "ws://10.0.0.1:4000"})
        assert response.json()["ok"] is True
        peers = client.get("/signal/room-1/peers").json()["peers"]
        assert peers == {"peer-a": "ws://10.0.0.1:4000"}

        assert client.delete("/signal/room-1/peers/peer-a").json() == {"ok": True}
        assert client.get("/signal/room-1/peers").json()["peers"] == {}
        assert client.delete("/signal/room-1/peers/peer-a").json() == {"ok": False}

    def test_register_requires_address(self, client):
        response = client.put("/signal/room-1/peers/peer-a", json={"address": ""})
        assert response.status_code == 422

    def test_registrations_expire(self, client):
        api.get_signal_registry().ttl = 0
        client.put("/signal/room-1/peers/peer-a", json={"address": "ws://10.0.0.1:4000"})
        assert client.get("/signal/room-1/peers").json()["peers"] == {}


class TestRoomHub:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_attached_members(self):
        hub = RoomHub()
        queue_a = hub.attach("room-1", "peer-a")
        queue_b = hub.attach("room-1", "peer-b")
        hub.join("room-1", "peer-a", "Ann")
        hub.join("room-1", "peer-b", "Bob")

        # peer-a was told about peer-b joining
        assert queue_a.get_nowait() == ("member-joined", {"peer_id": "peer-b", "display_name": "Bob"})

        assert hub.broadcast("room-1", "message", {"text": "hi"}, exclude="peer-a") == 1
        assert queue_b.get_nowait() == ("message", {"text": "hi"})
        assert queue_a.empty()

    @pytest.mark.asyncio
    async def test_detach_leaves_room(self):
        hub = RoomHub()
        queue_a = hub.attach("room-1", "peer-a")
        queue_b = hub.attach("room-1", "peer-b")
        hub.join("room-1", "peer-a", "Ann")
        hub.join("room-1", "peer-b", "Bob")
        queue_a.get_nowait()

        hub.detach("room-1", "peer-b", queue_b)

        assert [m.peer_id for m in hub.members("room-1")] == ["peer-a"]
        assert queue_a.get_nowait() == ("member-left", {"peer_id": "peer-b"})

    @pytest.mark.asyncio
    async def test_stale_detach_is_ignored(self):
        hub = RoomHub()
        old = hub.attach("room-1", "peer-a")
        hub.attach("room-1", "peer-a")
        hub.join("room-1", "peer-a", "Ann")
        hub.detach("room-1", "peer-a", old)
        assert hub.is_member("room-1", "peer-a")

    def test_empty_rooms_are_dropped(self):
        hub = RoomHub()
        hub.join("room-1", "peer-a", "Ann")
        hub.leave("room-1", "peer-a")
        assert hub.rooms == {}


class TestSignalRegistry:
    def test_unknown_room(self):
        assert SignalRegistry().peers("nope") == {}

    def test_refresh_replaces_address(self):
        registry = SignalRegistry(ttl=60)
        registry.register("room-1", "peer-a", "ws://old")
        registry.register("room-1", "peer-a", "ws://new")
        assert registry.peers("room-1") == {"peer-a": "ws://new"}


def test_format_sse():
    assert format_sse("message", {"a": 1}) == 'event: message\ndata: {"a": 1}\n\n'
