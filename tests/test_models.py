"""Tests for the core data model."""

import pytest

from sidechat.models import (
    Connection,
    ConnectionState,
    DeliveryState,
    Message,
    Room,
    RoomInfo,
    TransportKind,
    now_ms,
)


class TestConnectionTransitions:
    def test_starts_connecting(self):
        conn = Connection(peer_id="p1", transport=TransportKind.MESH)
        assert conn.state is ConnectionState.CONNECTING
        assert not conn.is_open
        assert not conn.is_finished

    def test_connecting_to_open_to_closed(self):
        conn = Connection(peer_id="p1", transport=TransportKind.MESH)
        conn.transition(ConnectionState.OPEN)
        assert conn.is_open
        conn.transition(ConnectionState.CLOSED)
        assert conn.is_finished

    def test_connecting_to_errored(self):
        conn = Connection(peer_id="p1", transport=TransportKind.RELAY)
        conn.transition(ConnectionState.ERRORED)
        assert conn.is_finished

    def test_open_cannot_become_errored(self):
        conn = Connection(peer_id="p1", transport=TransportKind.MESH)
        conn.transition(ConnectionState.OPEN)
        with pytest.raises(ValueError):
            conn.transition(ConnectionState.ERRORED)
        assert conn.state is ConnectionState.OPEN

    @pytest.mark.parametrize("terminal", [ConnectionState.CLOSED, ConnectionState.ERRORED])
    def test_terminal_states_are_final(self, terminal):
        conn = Connection(peer_id="p1", transport=TransportKind.MESH, state=terminal)
        for target in ConnectionState:
            with pytest.raises(ValueError):
                conn.transition(target)

    def test_connecting_cannot_close_directly(self):
        conn = Connection(peer_id="p1", transport=TransportKind.MESH)
        with pytest.raises(ValueError):
            conn.transition(ConnectionState.CLOSED)


class TestMessage:
    def test_row_round_trip_keeps_state(self):
        message = Message(
            mid="m1",
            room_id="r1",
            sender_id="s1",
            text="hi",
            display_name="Ann",
            timestamp=1234,
            delivery_state=DeliveryState.LOCAL_ONLY,
            id=7,
        )
        restored = Message.from_row(message.to_dict())
        assert restored == message

    def test_with_state_returns_copy(self):
        message = Message(mid="m1", room_id="r1", sender_id="s1", text="hi")
        sent = message.with_state(DeliveryState.SENT)
        assert sent.delivery_state is DeliveryState.SENT
        assert message.delivery_state is DeliveryState.PENDING

    def test_defaults(self):
        before = now_ms()
        message = Message(mid="m1", room_id="r1", sender_id="s1", text="hi")
        assert message.display_name == "Anonymous"
        assert message.timestamp >= before
        assert message.id is None


class TestRoom:
    def test_from_row_without_name(self):
        room = Room.from_row(
            {"room_id": "r1", "context_id": "ctx", "created_at": 1, "last_active_at": 2}
        )
        assert room.name is None
        assert room.last_active_at == 2

    def test_room_info_exposes_room_id(self):
        info = RoomInfo(room=Room(room_id="ctx-abc", context_id="ctx"), transport=TransportKind.RELAY)
        assert info.room_id == "ctx-abc"
        assert info.messages == []
