"""Session Manager: one participant's membership in one room.

A session brings up a transport (trying each configured transport in order,
normally mesh then relay), persists every message it sends or receives
exactly once, and reports what happens through an event feed.

Lifecycle:
    IDLE -> CONNECTING -> ACTIVE -> CLOSED
    CONNECTING -> CLOSED   (every transport failed, or teardown())

The transport is chosen once per session. A session that fell back to the
relay stays on the relay; it never moves back to the mesh mid-session.

Usage:
    session = Session(store, identities, [mesh, relay])
    sub = session.subscribe(print)
    info = await session.create_room("video-123")
    await session.send_message("hi")
    await session.teardown()
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from functools import partial
from typing import AsyncIterator, Sequence

from uuid_extensions import uuid7 as make_uuid7

from .errors import SessionError, StoreError, TransportError, ValidationError
from .events import ConnectionChange, ErrorInfo, Event, EventFeed, EventType, Handler, Subscription
from .identity import IdentityManager
from .metrics import metrics
from .models import (
    ANONYMOUS_DISPLAY_NAME,
    Connection,
    ConnectionState,
    DeliveryState,
    Identity,
    Message,
    Room,
    RoomDescriptor,
    RoomInfo,
    SessionState,
    now_ms,
)
from .sanitize import sanitize_display_name, sanitize_text
from .store import DEFAULT_MESSAGE_LIMIT, LocalStore
from .transport import Transport
from .wire import WireMessage

logger = logging.getLogger(__name__)

ROOM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")

# Random bytes in a generated room id suffix (12 hex chars)
ROOM_SUFFIX_BYTES = 6

# Attempts at finding a room id not already in the Local Store
ROOM_ID_ATTEMPTS = 5


def generate_room_id(context_id: str) -> str:
    return f"{context_id}-{secrets.token_hex(ROOM_SUFFIX_BYTES)}"


def is_valid_room_id(room_id: str | None) -> bool:
    return bool(room_id) and ROOM_ID_PATTERN.match(room_id) is not None


def context_of(room_id: str) -> str:
    """Best-effort context id of a room id generated by `generate_room_id`."""
    context, sep, _ = room_id.rpartition("-")
    return context if sep else room_id


class Session:
    """One room, one transport, one lifetime. Not reusable after CLOSED."""

    def __init__(
        self,
        store: LocalStore,
        identities: IdentityManager,
        transports: Sequence[Transport],
        feed: EventFeed | None = None,
        history_limit: int = DEFAULT_MESSAGE_LIMIT,
    ):
        self.store = store
        self.identities = identities
        self.feed = feed or EventFeed()
        self.history_limit = history_limit
        self.state = SessionState.IDLE
        self.room: Room | None = None
        self.identity: Identity | None = None
        self.transport: Transport | None = None
        self._transports = list(transports)
        self._connections: dict[str, Connection] = {}
        self._connect_task: asyncio.Task | None = None
        self._inbound: asyncio.Queue[WireMessage] | None = None
        self._inbound_task: asyncio.Task | None = None
        self._closing = False
        self._torn_down = False

    async def _run_sync(self, fn, *args):
        """Run a blocking store call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    # --- Subscriptions ---

    def subscribe(self, handler: Handler) -> Subscription:
        return self.feed.subscribe(handler)

    def stream(self) -> AsyncIterator[Event]:
        return self.feed.stream()

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    @property
    def room_id(self) -> str | None:
        return self.room.room_id if self.room else None

    # --- Room entry ---

    async def create_room(self, context_id: str, name: str | None = None) -> RoomInfo:
        """Create a new room for `context_id` and bring up a transport for it.

        Raises:
            SessionError: Invalid context id, session not idle, or every
                transport failed.
        """
        self._require_idle()
        if not is_valid_room_id(context_id) or len(context_id) > 100:
            raise SessionError(f"Invalid context id: {context_id!r}")

        room_id = await self._unused_room_id(context_id)
        room = Room(room_id=room_id, context_id=context_id, name=name)
        await self._bring_up(room)
        room = await self._save_room(room)
        logger.info(f"Created room {room_id} via {self.transport.kind.value}")
        return RoomInfo(room=room, transport=self.transport.kind, messages=[])

    async def join_room(self, room_id: str) -> RoomInfo:
        """Join an existing room, loading its stored history first.

        Raises:
            SessionError: Invalid room id, session not idle, or every
                transport failed.
        """
        self._require_idle()
        if not is_valid_room_id(room_id):
            raise SessionError(f"Invalid room id: {room_id!r}")

        try:
            existing = await self._run_sync(self.store.get_room, room_id)
            history = await self._run_sync(self.store.get_messages, room_id, self.history_limit)
        except StoreError:
            logger.warning(f"Could not load history for room {room_id}", exc_info=True)
            existing, history = None, []

        room = existing or Room(room_id=room_id, context_id=context_of(room_id))
        await self._bring_up(room)
        room = await self._save_room(room)
        logger.info(f"Joined room {room_id} via {self.transport.kind.value}")
        return RoomInfo(room=room, transport=self.transport.kind, messages=history)

    def _require_idle(self) -> None:
        if self.state is not SessionState.IDLE:
            raise SessionError(f"Session is {self.state.value}, expected idle")

    async def _unused_room_id(self, context_id: str) -> str:
        room_id = generate_room_id(context_id)
        for _ in range(ROOM_ID_ATTEMPTS):
            try:
                taken = await self._run_sync(self.store.room_exists, room_id)
            except StoreError:
                logger.warning("Could not check room id collision", exc_info=True)
                return room_id
            if not taken:
                return room_id
            logger.info(f"Room id {room_id} already exists, regenerating")
            room_id = generate_room_id(context_id)
        return room_id

    async def _save_room(self, room: Room) -> Room:
        room.last_active_at = now_ms()
        try:
            return await self._run_sync(self.store.save_room, room)
        except StoreError:
            logger.warning(f"Could not save room {room.room_id}", exc_info=True)
            return room

    # --- Transport bring-up ---

    async def _bring_up(self, room: Room) -> Transport:
        self.state = SessionState.CONNECTING
        self.identity = await self._run_sync(self.identities.get_or_create_identity)
        if self._closing:
            raise SessionError("Session was torn down while connecting")
        if not self._transports:
            self.state = SessionState.CLOSED
            raise SessionError("No transports configured")

        self.room = room
        self._inbound = asyncio.Queue()
        self._inbound_task = asyncio.create_task(self._inbound_worker())

        descriptor = RoomDescriptor(room_id=room.room_id, context_id=room.context_id)
        failures: list[str] = []
        for index, transport in enumerate(self._transports):
            if self._closing:
                raise SessionError("Session was torn down while connecting")

            transport.peer_id = self.identity.id
            transport.display_name = self.identity.display_name
            transport.on_message(partial(self._on_wire_message, transport))
            transport.on_connection_change(partial(self._on_connection_change, transport))

            self._connect_task = asyncio.create_task(transport.connect(descriptor))
            try:
                await self._connect_task
            except asyncio.CancelledError:
                if self._closing:
                    raise SessionError("Session was torn down while connecting") from None
                self.state = SessionState.CLOSED
                await self._stop_inbound()
                raise
            except TransportError as e:
                if self._closing:
                    raise SessionError("Session was torn down while connecting") from e
                failures.append(f"{transport.kind.value}: {e}")
                metrics.increment(f"session.{transport.kind.value}_failures")
                logger.warning(f"{transport.kind.value} transport failed to connect: {e}")
                self._publish_connection(transport, ConnectionState.ERRORED, detail=str(e))
                await transport.disconnect()
                continue
            finally:
                self._connect_task = None

            if self._closing:
                await transport.disconnect()
                raise SessionError("Session was torn down while connecting")

            self.transport = transport
            self.state = SessionState.ACTIVE
            self._connections = {c.peer_id: c for c in transport.connections if not c.is_finished}
            if index > 0:
                metrics.increment("session.fallbacks")
            self._publish_connection(transport, ConnectionState.OPEN)
            return transport

        self.state = SessionState.CLOSED
        await self._stop_inbound()
        raise SessionError(f"All transports failed ({'; '.join(failures)})")

    def _publish_connection(
        self,
        transport: Transport,
        state: ConnectionState,
        peer_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        self.feed.publish(
            EventType.CONNECTION_STATE_CHANGED,
            ConnectionChange(
                transport=transport.kind,
                state=state,
                peer_id=peer_id,
                session_state=self.state,
                detail=detail,
            ),
        )

    def _on_connection_change(self, transport: Transport, connection: Connection) -> None:
        if self.state is not SessionState.ACTIVE or transport is not self.transport:
            return
        if connection.is_finished:
            self._connections.pop(connection.peer_id, None)
        else:
            self._connections[connection.peer_id] = connection
        self._publish_connection(transport, connection.state, peer_id=connection.peer_id)

    # --- Inbound ---

    def _on_wire_message(self, transport: Transport, message: WireMessage) -> None:
        if self._closing or self._inbound is None:
            return
        if self.transport is not None and transport is not self.transport:
            return
        self._inbound.put_nowait(message)

    async def _inbound_worker(self) -> None:
        # One consumer keeps arrival order
        while True:
            message = await self._inbound.get()
            try:
                await self.handle_incoming(message)
            except SessionError:
                logger.debug("Dropping inbound message for a closed session")

    async def _stop_inbound(self) -> None:
        task, self._inbound_task = self._inbound_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def handle_incoming(self, wire: WireMessage) -> Message | None:
        """De-duplicate, persist and publish one inbound message.

        Returns the stored message, or None if it was a duplicate or not for
        this session.
        """
        if self.room is None or self._closing:
            raise SessionError("Session is not active")
        if wire.room_id != self.room.room_id or wire.sender_id == self.identity.id:
            return None

        message = wire.to_message(DeliveryState.RECEIVED)
        message.text = sanitize_text(message.text)
        if not message.text.strip():
            logger.debug(f"Dropping message {wire.mid} with no text after sanitizing")
            return None

        try:
            stored, created = await self._run_sync(self.store.insert_if_absent, message)
        except ValidationError:
            logger.debug(f"Dropping invalid message {wire.mid}", exc_info=True)
            return None
        except StoreError as e:
            logger.warning(f"Could not store inbound message {wire.mid}", exc_info=True)
            self.feed.publish(EventType.ERROR, ErrorInfo(kind="store", message=str(e), mid=wire.mid))
            self.feed.publish(EventType.MESSAGE_RECEIVED, message)
            return message

        if not created:
            logger.debug(f"Duplicate message {wire.mid}")
            return None

        await self._touch_room(stored.timestamp)
        self.feed.publish(EventType.MESSAGE_RECEIVED, stored)
        return stored

    # --- Outbound ---

    async def send_message(self, text: str, display_name: str | None = None) -> Message:
        """Persist and send a message.

        The returned message is always stored; its delivery_state is SENT,
        LOCAL_ONLY (nobody reachable) or PENDING (the transport failed; see
        retry_pending()). A MESSAGE_SENT event is published in every case.

        Raises:
            ValidationError: Empty or whitespace-only text (no side effects).
            SessionError: No active session.
            StoreError: The message could not be persisted.
        """
        if self.state is not SessionState.ACTIVE:
            raise SessionError(f"Cannot send, session is {self.state.value}")
        clean = sanitize_text(text or "").strip()
        if not clean:
            raise ValidationError("Message text is empty")

        name = sanitize_display_name(display_name) if display_name else ""
        message = Message(
            mid=str(make_uuid7()),
            room_id=self.room.room_id,
            sender_id=self.identity.id,
            text=clean,
            display_name=name or self.identity.display_name or ANONYMOUS_DISPLAY_NAME,
            timestamp=now_ms(),
            delivery_state=DeliveryState.PENDING,
        )
        await self._run_sync(self.store.save_message, message)

        message.delivery_state = await self._deliver(message)
        self.feed.publish(EventType.MESSAGE_SENT, message)
        await self._touch_room(message.timestamp)
        return message

    async def _deliver(self, message: Message) -> DeliveryState:
        try:
            report = await self.transport.send(WireMessage.from_message(message))
        except TransportError as e:
            logger.warning(f"Send of {message.mid} failed, left pending: {e}")
            metrics.increment("session.send_failures")
            self.feed.publish(
                EventType.ERROR, ErrorInfo(kind="transport", message=str(e), mid=message.mid)
            )
            return DeliveryState.PENDING

        state = DeliveryState.LOCAL_ONLY if report.partial else DeliveryState.SENT
        try:
            await self._run_sync(self.store.update_delivery_state, message.mid, state)
        except StoreError as e:
            logger.warning(f"Could not record delivery of {message.mid}", exc_info=True)
            self.feed.publish(EventType.ERROR, ErrorInfo(kind="store", message=str(e), mid=message.mid))
        return state

    async def retry_pending(self) -> list[Message]:
        """Re-send every PENDING message of the room. Returns them with their new state."""
        if self.state is not SessionState.ACTIVE:
            raise SessionError(f"Cannot retry, session is {self.state.value}")
        pending = await self._run_sync(self.store.get_pending, self.room.room_id)
        for message in pending:
            message.delivery_state = await self._deliver(message)
        return pending

    async def _touch_room(self, timestamp: int) -> None:
        try:
            await self._run_sync(self.store.touch_room, self.room.room_id, timestamp)
        except StoreError:
            logger.warning(f"Could not update activity of room {self.room.room_id}", exc_info=True)

    # --- Teardown ---

    async def teardown(self) -> None:
        """Release the transport and every connection. Safe to call repeatedly.

        A pending connect is cancelled. An ACTIVE session publishes one final
        CLOSED change; a session torn down while CONNECTING publishes nothing.
        """
        if self._torn_down:
            return
        self._torn_down = True
        was_active = self.state is SessionState.ACTIVE
        self._closing = True
        self.state = SessionState.CLOSED

        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

        await self._stop_inbound()
        for transport in self._transports:
            try:
                await transport.disconnect()
            except Exception:
                logger.warning(f"Error disconnecting {transport.kind.value} transport", exc_info=True)
        self._connections.clear()

        if was_active and self.transport is not None:
            self._publish_connection(self.transport, ConnectionState.CLOSED)
        logger.info(f"Session for room {self.room_id} closed")
