"""Sidechat client: the process-level owner of the store, identity and session.

Usage:
    async with Sidechat() as chat:
        chat.subscribe(print)
        info = await chat.create_room("video-123")
        await chat.send_message("hello")

    # Ephemeral store, relay only (tests)
    chat = Sidechat.in_memory(mesh=False, relay_url="http://127.0.0.1:8765")
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, AsyncIterator, Callable

from .errors import SessionError
from .events import Event, EventFeed, Handler, Subscription
from .identity import IdentityManager
from .mesh import MeshTransport
from .models import Identity, Message, Room, RoomInfo
from .options import SidechatOptions
from .relay import RelayTransport
from .session import Session
from .signaling import HttpSignaling, Signaling
from .store import DEFAULT_MESSAGE_LIMIT, InMemoryStore, LocalStore
from .transport import Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[Identity], list[Transport]]


class Sidechat:
    """Unified client for sidechat.

    Keeps at most one active session. Entering a room tears down the
    previous session first. Subscriptions outlive individual sessions.
    """

    def __init__(
        self,
        options: SidechatOptions | None = None,
        *,
        store: LocalStore | None = None,
        signaling: Signaling | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        """Initialize the client.

        Args:
            options: Configuration options. If None, read from env and config file.
            store: Use this store instead of opening one from options.
            signaling: Discovery oracle for the mesh (default: HTTP signaling
                against options.signaling_url).
            transport_factory: Build the transports for each new session
                (default: mesh then relay, as enabled in options).
        """
        self._options = options or SidechatOptions()
        self._store = store or self._create_store()
        self._identities = IdentityManager(self._store)
        self._signaling = signaling
        self._owns_signaling = False
        self._transport_factory = transport_factory or self._default_transports
        self._feed = EventFeed()
        self._session: Session | None = None
        self._closed = False

    def _create_store(self) -> LocalStore:
        if self._options.is_in_memory():
            return InMemoryStore()
        return LocalStore(self._options.resolved_db)

    def _default_transports(self, identity: Identity) -> list[Transport]:
        opts = self._options
        transports: list[Transport] = []
        if opts.mesh:
            if self._signaling is None:
                self._signaling = HttpSignaling(opts.signaling_url)
                self._owns_signaling = True
            transports.append(
                MeshTransport(
                    identity.id,
                    self._signaling,
                    settings=opts.mesh_settings,
                    display_name=identity.display_name,
                )
            )
        if opts.relay:
            transports.append(
                RelayTransport(
                    identity.id,
                    opts.relay_url,
                    settings=opts.relay_settings,
                    display_name=identity.display_name,
                )
            )
        return transports

    # --- Factory Methods ---

    @classmethod
    def in_memory(cls, **kwargs: Any) -> "Sidechat":
        """Create a client with an ephemeral store (testing)."""
        return cls(SidechatOptions.for_in_memory(**kwargs))

    # --- Properties ---

    @property
    def options(self) -> SidechatOptions:
        return self._options

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def session(self) -> Session | None:
        """The current session, if any."""
        return self._session

    # --- Sessions ---

    def _new_session(self) -> Session:
        if self._closed:
            raise SessionError("Client is closed")
        identity = self._identities.get_or_create_identity()
        return Session(
            self._store,
            self._identities,
            self._transport_factory(identity),
            feed=self._feed,
        )

    async def create_room(self, context_id: str, name: str | None = None) -> RoomInfo:
        """Create a room for `context_id` and make it the active session."""
        await self.leave()
        self._session = self._new_session()
        return await self._session.create_room(context_id, name=name)

    async def join_room(self, room_id: str) -> RoomInfo:
        """Join `room_id` and make it the active session."""
        await self.leave()
        self._session = self._new_session()
        return await self._session.join_room(room_id)

    async def send_message(self, text: str, display_name: str | None = None) -> Message:
        return await self._require_session().send_message(text, display_name=display_name)

    async def retry_pending(self) -> list[Message]:
        return await self._require_session().retry_pending()

    def _require_session(self) -> Session:
        if self._session is None:
            raise SessionError("No active room; create or join one first")
        return self._session

    async def leave(self) -> None:
        """Tear down the current session, if any."""
        session, self._session = self._session, None
        if session is not None:
            await session.teardown()

    # --- Subscriptions ---

    def subscribe(self, handler: Handler) -> Subscription:
        return self._feed.subscribe(handler)

    def stream(self) -> AsyncIterator[Event]:
        return self._feed.stream()

    # --- Local Store ---

    def get_messages(self, room_id: str, limit: int = DEFAULT_MESSAGE_LIMIT) -> list[Message]:
        return self._store.get_messages(room_id, limit=limit)

    def search_messages(self, room_id: str, query: str) -> list[Message]:
        return self._store.search_messages(room_id, query)

    def list_rooms(self) -> list[Room]:
        return self._store.list_rooms()

    def purge_older_than(self, retention: timedelta | None = None) -> int:
        """Delete old messages. Defaults to the configured retention period."""
        if retention is None:
            retention = timedelta(days=self._options.retention_days)
        return self._store.purge_older_than(retention)

    # --- Identity ---

    def identity(self) -> Identity:
        return self._identities.get_or_create_identity()

    def set_display_name(self, name: str) -> Identity:
        return self._identities.set_display_name(name)

    # --- Lifecycle ---

    async def close(self) -> None:
        """Tear down the session and release the store. Idempotent."""
        if self._closed:
            return
        await self.leave()
        self._closed = True
        if self._owns_signaling and self._signaling is not None:
            await self._signaling.close()
        self._store.close()

    async def __aenter__(self) -> "Sidechat":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
