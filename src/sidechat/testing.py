"""Pytest fixtures and helpers for testing with sidechat.

Usage in conftest.py:
    pytest_plugins = ["sidechat.testing"]

Available fixtures:
    - store: Fresh in-memory Local Store
    - local_store: File-backed Local Store (uses tmp_path)
    - identities: IdentityManager over `store`
    - signaling: In-process discovery oracle for mesh transports
    - relay_server: The relay/signaling service running on a free local port
    - relay_url: Base URL of `relay_server`

Helpers:
    - FakeTransport: scriptable Transport for session tests
    - make_wire_message / seed_messages
    - wait_until: poll a condition from an async test
"""

from __future__ import annotations

import asyncio
import socket
import threading
import time
from typing import TYPE_CHECKING, Generator

import pytest
import uvicorn
from uuid_extensions import uuid7 as make_uuid7

from . import api
from .identity import IdentityManager
from .models import Connection, ConnectionState, DeliveryState, Message, RoomDescriptor, TransportKind, now_ms
from .signaling import InMemorySignaling
from .store import InMemoryStore, LocalStore
from .transport import ConnectionHandle, DeliveryReport, Transport
from .wire import WireMessage

if TYPE_CHECKING:
    from pathlib import Path


# --- Fake transport ---


class FakeTransport(Transport):
    """In-process transport whose behaviour is set by the test.

    Example:
        mesh = FakeTransport(TransportKind.MESH, connect_error=ConnectionRefused("no"))
        relay = FakeTransport(TransportKind.RELAY, recipients=2)
        session = Session(store, identities, [mesh, relay])
    """

    def __init__(
        self,
        kind: TransportKind = TransportKind.RELAY,
        *,
        connect_error: Exception | None = None,
        connect_delay: float = 0.0,
        recipients: int = 1,
        send_error: Exception | None = None,
        peer_id: str = "fake",
    ):
        super().__init__(peer_id)
        self.kind = kind
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.recipients = recipients
        self.send_error = send_error
        self.connected_room: RoomDescriptor | None = None
        self.connect_calls = 0
        self.connect_cancelled = False
        self.disconnect_calls = 0
        self.sent: list[WireMessage] = []
        self._peers: dict[str, Connection] = {}

    @property
    def connections(self) -> list[Connection]:
        return list(self._peers.values())

    async def connect(self, room: RoomDescriptor) -> ConnectionHandle:
        self.connect_calls += 1
        try:
            if self.connect_delay:
                await asyncio.sleep(self.connect_delay)
        except asyncio.CancelledError:
            self.connect_cancelled = True
            raise
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_room = room
        return ConnectionHandle(transport=self.kind, room_id=room.room_id, local_peer_id=self.peer_id)

    async def send(self, message: WireMessage) -> DeliveryReport:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)
        return DeliveryReport(transport=self.kind, recipients=self.recipients, attempted=self.recipients)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected_room = None

    def deliver(self, message: WireMessage) -> bool:
        """Simulate an inbound wire message."""
        return self._dispatch_message(message)

    def peer_joined(self, peer_id: str) -> Connection:
        connection = Connection(peer_id=peer_id, transport=self.kind)
        self._peers[peer_id] = connection
        self._set_state(connection, ConnectionState.OPEN)
        return connection

    def peer_left(self, peer_id: str) -> None:
        connection = self._peers.pop(peer_id)
        self._set_state(connection, ConnectionState.CLOSED)


# --- Helpers ---


def make_wire_message(
    room_id: str,
    sender_id: str = "peer-b",
    text: str = "hello",
    timestamp: int | None = None,
    mid: str | None = None,
    display_name: str = "Bob",
) -> WireMessage:
    return WireMessage(
        mid=mid or str(make_uuid7()),
        room_id=room_id,
        sender_id=sender_id,
        display_name=display_name,
        text=text,
        timestamp=timestamp if timestamp is not None else now_ms(),
    )


def seed_messages(
    store: LocalStore,
    room_id: str,
    items: list[tuple[int, str]],
    sender_id: str = "peer-b",
    display_name: str = "Bob",
) -> list[Message]:
    """Store (timestamp, text) pairs as received messages of `room_id`."""
    stored = []
    for timestamp, text in items:
        message = Message(
            mid=str(make_uuid7()),
            room_id=room_id,
            sender_id=sender_id,
            display_name=display_name,
            text=text,
            timestamp=timestamp,
            delivery_state=DeliveryState.RECEIVED,
        )
        store.save_message(message)
        stored.append(message)
    return stored


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    """Poll `predicate` until it is true, failing after `timeout` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


def find_free_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class RelayServer:
    """The relay/signaling service under uvicorn in a background thread."""

    def __init__(self, host: str = "127.0.0.1", port: int | None = None):
        self.host = host
        self.port = port or find_free_port(host)
        config = uvicorn.Config(
            api.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            timeout_graceful_shutdown=1,
        )
        self.server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self.server.run, daemon=True)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def start(self, timeout: float = 10.0) -> None:
        self._thread.start()
        deadline = time.monotonic() + timeout
        while not self.server.started:
            if time.monotonic() > deadline or not self._thread.is_alive():
                raise RuntimeError(f"Relay server did not start on {self.url}")
            time.sleep(0.02)

    def stop(self, timeout: float = 5.0) -> None:
        self.server.should_exit = True
        self._thread.join(timeout)


# --- Fixtures ---


@pytest.fixture
def store() -> Generator[InMemoryStore, None, None]:
    """Fresh in-memory Local Store."""
    s = InMemoryStore()
    yield s
    s.close()


@pytest.fixture
def local_store(tmp_path: "Path") -> Generator[LocalStore, None, None]:
    """File-backed Local Store in tmp_path."""
    s = LocalStore(tmp_path / "sidechat.db")
    yield s
    s.close()


@pytest.fixture
def identities(store: InMemoryStore) -> IdentityManager:
    return IdentityManager(store)


@pytest.fixture
def signaling() -> InMemorySignaling:
    return InMemorySignaling()


@pytest.fixture
def relay_server() -> Generator[RelayServer, None, None]:
    """Relay service on a free port, with fresh state."""
    api.reset_state()
    server = RelayServer()
    server.start()
    yield server
    server.stop()
    api.reset_state()


@pytest.fixture
def relay_url(relay_server: RelayServer) -> str:
    return relay_server.url
