"""Transport contract shared by the mesh and relay transports.

A transport gives a session readiness to send and receive within one room:

    handle = await transport.connect(RoomDescriptor(room_id))
    transport.on_message(handler)            # once per distinct wire message
    transport.on_connection_change(handler)  # peer/relay link state changes
    report = await transport.send(wire_message)
    await transport.disconnect()             # idempotent

There are exactly two implementations, `MeshTransport` (sidechat.mesh) and
`RelayTransport` (sidechat.relay). Sessions only use this interface.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from .models import Connection, ConnectionState, RoomDescriptor, TransportKind
from .wire import WireMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[WireMessage], None]
ConnectionHandler = Callable[[Connection], None]

# Remembered message ids per transport
SEEN_CACHE_SIZE = 4096


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number `attempt` (0-based): base * 2**attempt, capped."""
    return min(base * (2**attempt), maximum)


@dataclass(frozen=True)
class ConnectionHandle:
    """Returned by a successful `connect()`."""

    transport: TransportKind
    room_id: str
    local_peer_id: str
    address: str | None = None
    """Where this participant can be reached (mesh listen URL, or relay URL)."""


@dataclass(frozen=True)
class DeliveryReport:
    """Outcome of `send()`."""

    transport: TransportKind
    recipients: int
    """Participants the message was handed to."""
    attempted: int = 0
    """Participants the transport tried to reach."""

    @property
    def partial(self) -> bool:
        """True when no recipient was reachable (partial delivery)."""
        return self.recipients == 0


class SeenCache:
    """Bounded set of recently seen message ids (oldest evicted first)."""

    def __init__(self, maxsize: int = SEEN_CACHE_SIZE):
        self.maxsize = maxsize
        self._ids: OrderedDict[str, None] = OrderedDict()

    def add(self, mid: str) -> bool:
        """Record `mid`. Returns False if it was already present."""
        if mid in self._ids:
            self._ids.move_to_end(mid)
            return False
        self._ids[mid] = None
        if len(self._ids) > self.maxsize:
            self._ids.popitem(last=False)
        return True

    def __contains__(self, mid: str) -> bool:
        return mid in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def clear(self) -> None:
        self._ids.clear()


class Transport(ABC):
    """Abstract base class for sidechat transports.

    Subclasses implement `connect`, `send` and `disconnect`, and deliver
    inbound traffic through `_dispatch_message` / `_dispatch_connection`,
    which take care of de-duplication and handler isolation.
    """

    kind: TransportKind

    def __init__(self, peer_id: str, display_name: str = ""):
        self.peer_id = peer_id
        self.display_name = display_name
        self._message_handlers: list[MessageHandler] = []
        self._connection_handlers: list[ConnectionHandler] = []
        self._seen = SeenCache()

    @abstractmethod
    async def connect(self, room: RoomDescriptor) -> ConnectionHandle:
        """Become ready to send and receive in `room`.

        Raises:
            TransportError: ConnectionRefused or HandshakeTimeout.
        """
        ...

    @abstractmethod
    async def send(self, message: WireMessage) -> DeliveryReport:
        """Deliver `message` to every currently known participant.

        Never blocks indefinitely. Succeeds with `report.partial` set when no
        recipient was reachable.

        Raises:
            TransportError: If the transport is not connected or the send fails.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Release every resource. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def connections(self) -> list[Connection]:
        """Current peer (or relay) connections."""
        ...

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_connection_change(self, handler: ConnectionHandler) -> None:
        self._connection_handlers.append(handler)

    def _dispatch_message(self, message: WireMessage) -> bool:
        """Hand an inbound message to the handlers, once per mid.

        Returns False for a duplicate or for our own message.
        """
        if message.sender_id == self.peer_id:
            return False
        if not self._seen.add(message.mid):
            logger.debug(f"{self.kind.value}: dropping duplicate message {message.mid}")
            return False
        for handler in list(self._message_handlers):
            try:
                handler(message)
            except Exception:
                logger.warning("Message handler failed", exc_info=True)
        return True

    def _dispatch_connection(self, connection: Connection) -> None:
        for handler in list(self._connection_handlers):
            try:
                handler(connection)
            except Exception:
                logger.warning("Connection handler failed", exc_info=True)

    def _set_state(self, connection: Connection, state: ConnectionState) -> bool:
        """Transition `connection` and notify handlers. Illegal moves are ignored."""
        try:
            connection.transition(state)
        except ValueError:
            logger.debug(f"Ignoring transition of {connection.peer_id} to {state.value}")
            return False
        self._dispatch_connection(connection)
        return True
