"""Core data model: identities, rooms, messages and connections.

All timestamps are integer epoch milliseconds.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

ANONYMOUS_DISPLAY_NAME = "Anonymous"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class DeliveryState(str, Enum):
    """Delivery state of a stored message."""

    PENDING = "pending"
    SENT = "sent"
    LOCAL_ONLY = "local_only"
    """Sent, but the transport reported that no recipient was reachable."""
    RECEIVED = "received"


class TransportKind(str, Enum):
    MESH = "mesh"
    RELAY = "relay"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


# Allowed Connection state transitions
_CONNECTION_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset({ConnectionState.OPEN, ConnectionState.ERRORED}),
    ConnectionState.OPEN: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset(),
    ConnectionState.ERRORED: frozenset(),
}


@dataclass
class Identity:
    """A participant identity. `id` never changes for an installation."""

    id: str
    display_name: str
    last_seen: int = field(default_factory=now_ms)
    ephemeral: bool = False
    """True when the identity could not be persisted and lives only in memory."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "last_seen": self.last_seen,
        }


@dataclass
class Room:
    """A stored room."""

    room_id: str
    context_id: str
    created_at: int = field(default_factory=now_ms)
    last_active_at: int = field(default_factory=now_ms)
    name: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Room":
        return cls(
            room_id=row["room_id"],
            context_id=row["context_id"],
            created_at=row["created_at"],
            last_active_at=row["last_active_at"],
            name=row.get("name"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "context_id": self.context_id,
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
            "name": self.name,
        }


@dataclass
class Message:
    """A chat message as stored locally.

    `mid` is the explicit message id used for de-duplication; `id` is the
    store's auto-increment sequence id (None until persisted).
    """

    mid: str
    room_id: str
    sender_id: str
    text: str
    display_name: str = ANONYMOUS_DISPLAY_NAME
    timestamp: int = field(default_factory=now_ms)
    delivery_state: DeliveryState = DeliveryState.PENDING
    id: int | None = None

    def with_state(self, state: DeliveryState) -> "Message":
        return replace(self, delivery_state=state)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Message":
        return cls(
            id=row["id"],
            mid=row["mid"],
            room_id=row["room_id"],
            sender_id=row["sender_id"],
            display_name=row["display_name"],
            text=row["text"],
            timestamp=row["timestamp"],
            delivery_state=DeliveryState(row["delivery_state"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mid": self.mid,
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "display_name": self.display_name,
            "text": self.text,
            "timestamp": self.timestamp,
            "delivery_state": self.delivery_state.value,
        }


@dataclass
class Connection:
    """One transport-level link to a peer (or to the relay)."""

    peer_id: str
    transport: TransportKind
    state: ConnectionState = ConnectionState.CONNECTING

    def transition(self, new_state: ConnectionState) -> None:
        """Move to `new_state`.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if new_state not in _CONNECTION_TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal connection transition for {self.peer_id}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def is_finished(self) -> bool:
        return self.state in (ConnectionState.CLOSED, ConnectionState.ERRORED)


@dataclass(frozen=True)
class RoomDescriptor:
    """What a transport needs to know to enter a room."""

    room_id: str
    context_id: str = ""


@dataclass
class RoomInfo:
    """Result of creating or joining a room."""

    room: Room
    transport: TransportKind
    messages: list[Message] = field(default_factory=list)

    @property
    def room_id(self) -> str:
        return self.room.room_id
