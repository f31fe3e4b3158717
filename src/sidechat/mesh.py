"""Mesh transport: direct WebSocket links between the participants of a room.

Each participant runs a small WebSocket server and registers its address
with a `Signaling` oracle. Peers learned from the oracle are dialed only by
the participant with the lexicographically smaller id, so two participants
never open duplicate links to each other.

Frames are JSON text:
    {"type": "hello", "peer_id": ..., "room_id": ..., "display_name": ...}
    {"type": "message", "message": {...WireMessage...}}

Both sides send a hello first; a link is OPEN once hellos are exchanged.
Failed dials are retried with bounded exponential backoff, then the peer is
marked ERRORED (PeerUnreachable). Other peers are unaffected.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.asyncio.server import Server, ServerConnection
from websockets.asyncio.server import serve as ws_serve
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ConnectionRefused, HandshakeTimeout, PeerUnreachable, SignalingError, TransportError
from .metrics import metrics
from .models import Connection, ConnectionState, RoomDescriptor, TransportKind
from .signaling import Signaling
from .transport import ConnectionHandle, DeliveryReport, Transport, backoff_delay
from .wire import HelloFrame, MessageFrame, WireMessage, parse_frame

logger = logging.getLogger(__name__)

# Close code for a rejected handshake (policy violation)
CLOSE_REJECTED = 1008


@dataclass
class MeshSettings:
    """Tunables for the mesh transport."""

    host: str = "127.0.0.1"
    port: int = 0
    """0 picks a free port."""
    advertise_host: str | None = None
    """Host put into the registered address; defaults to `host`."""
    max_retries: int = 3
    backoff_base: float = 0.2
    backoff_max: float = 2.0
    connect_timeout: float = 5.0
    send_timeout: float = 5.0
    discovery_interval: float = 2.0


@dataclass
class _PeerLink:
    connection: Connection
    ws: ClientConnection | ServerConnection
    display_name: str = ""

    @property
    def peer_id(self) -> str:
        return self.connection.peer_id


class MeshTransport(Transport):
    """Direct peer-to-peer transport."""

    kind = TransportKind.MESH

    def __init__(
        self,
        peer_id: str,
        signaling: Signaling,
        settings: MeshSettings | None = None,
        display_name: str = "",
    ):
        super().__init__(peer_id, display_name)
        self.signaling = signaling
        self.settings = settings or MeshSettings()
        self._room: RoomDescriptor | None = None
        self._server: Server | None = None
        self._address: str | None = None
        self._links: dict[str, _PeerLink] = {}
        self._dialing: dict[str, Connection] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._unreachable: dict[str, str] = {}
        self._discovery_task: asyncio.Task | None = None
        self._closed = False

    @property
    def address(self) -> str | None:
        return self._address

    @property
    def connections(self) -> list[Connection]:
        return [link.connection for link in self._links.values()] + list(self._dialing.values())

    @property
    def open_peers(self) -> list[str]:
        return sorted(pid for pid, link in self._links.items() if link.connection.is_open)

    def _hello(self) -> str:
        return HelloFrame(
            peer_id=self.peer_id,
            room_id=self._room.room_id,
            display_name=self.display_name or "Anonymous",
        ).model_dump_json()

    # --- Lifecycle ---

    async def connect(self, room: RoomDescriptor) -> ConnectionHandle:
        if self._closed:
            raise TransportError("Mesh transport already disconnected")
        if self._room is not None:
            raise TransportError(f"Mesh transport already connected to {self._room.room_id}")
        self._room = room

        try:
            await self._start_server()
            await self._register()
            await self._discover()
        except BaseException:
            await self.disconnect()
            raise

        self._discovery_task = asyncio.create_task(self._discovery_loop())
        logger.info(f"Mesh ready in room {room.room_id} at {self._address}")
        return ConnectionHandle(
            transport=self.kind,
            room_id=room.room_id,
            local_peer_id=self.peer_id,
            address=self._address,
        )

    async def _start_server(self) -> None:
        settings = self.settings
        try:
            self._server = await ws_serve(self._handle_inbound, settings.host, settings.port)
        except OSError as e:
            raise ConnectionRefused(f"Cannot listen on {settings.host}:{settings.port}: {e}") from e
        port = next(iter(self._server.sockets)).getsockname()[1]
        self._address = f"ws://{settings.advertise_host or settings.host}:{port}"

    async def _register(self) -> None:
        try:
            await asyncio.wait_for(
                self.signaling.register(self._room.room_id, self.peer_id, self._address),
                timeout=self.settings.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout("Timed out registering with signaling") from e

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True

        tasks = list(self._tasks.values())
        if self._discovery_task is not None:
            tasks.append(self._discovery_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        for link in list(self._links.values()):
            await link.ws.close()
        self._links.clear()
        self._dialing.clear()

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self._room is not None and self._address is not None:
            try:
                await asyncio.wait_for(
                    self.signaling.unregister(self._room.room_id, self.peer_id),
                    timeout=self.settings.connect_timeout,
                )
            except (SignalingError, asyncio.TimeoutError):
                logger.warning("Could not unregister from signaling", exc_info=True)
        logger.info("Mesh transport disconnected")

    # --- Discovery and dialing ---

    async def _discover(self) -> None:
        try:
            peers = await asyncio.wait_for(
                self.signaling.peers(self._room.room_id),
                timeout=self.settings.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout("Timed out listing peers from signaling") from e
        for peer_id, address in peers.items():
            if peer_id == self.peer_id or peer_id in self._links or peer_id in self._tasks:
                continue
            # The smaller id dials
            if self.peer_id > peer_id:
                continue
            if self._unreachable.get(peer_id) == address:
                continue
            self._tasks[peer_id] = asyncio.create_task(self._dial(peer_id, address))

    async def _discovery_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.discovery_interval)
            try:
                await self._register()
                await self._discover()
            except (SignalingError, HandshakeTimeout, asyncio.TimeoutError):
                logger.warning("Mesh discovery failed, will retry", exc_info=True)

    async def _dial(self, peer_id: str, address: str) -> None:
        connection = Connection(peer_id=peer_id, transport=self.kind)
        self._dialing[peer_id] = connection
        try:
            link = await self._dial_with_retries(connection, address)
            if link is None:
                return
            await self._run_link(link)
        finally:
            self._dialing.pop(peer_id, None)
            self._tasks.pop(peer_id, None)

    async def _dial_with_retries(self, connection: Connection, address: str) -> _PeerLink | None:
        peer_id = connection.peer_id
        attempts = self.settings.max_retries + 1
        for attempt in range(attempts):
            try:
                ws, hello = await self._open(peer_id, address)
            except (OSError, asyncio.TimeoutError, WebSocketException, ValueError) as e:
                logger.debug(f"Dial {peer_id} at {address} failed (attempt {attempt + 1}): {e}")
                if attempt + 1 < attempts:
                    metrics.increment("mesh.retries")
                    await asyncio.sleep(
                        backoff_delay(attempt, self.settings.backoff_base, self.settings.backoff_max)
                    )
                continue

            if peer_id in self._links:
                # The peer reached us first
                await ws.close()
                return None
            self._unreachable.pop(peer_id, None)
            self._dialing.pop(peer_id, None)
            link = _PeerLink(connection=connection, ws=ws, display_name=hello.display_name)
            self._links[peer_id] = link
            self._set_state(connection, ConnectionState.OPEN)
            logger.info(f"Mesh link to {peer_id} open")
            return link

        error = PeerUnreachable(peer_id, attempts)
        logger.warning(str(error))
        metrics.increment("mesh.peer_unreachable")
        self._unreachable[peer_id] = address
        self._dialing.pop(peer_id, None)
        self._set_state(connection, ConnectionState.ERRORED)
        return None

    async def _open(self, peer_id: str, address: str) -> tuple[ClientConnection, HelloFrame]:
        timeout = self.settings.connect_timeout
        ws = await ws_connect(address, open_timeout=timeout, close_timeout=timeout)
        try:
            await ws.send(self._hello())
            raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
            frame = parse_frame(json.loads(raw))
            if not isinstance(frame, HelloFrame) or frame.peer_id != peer_id:
                raise ValueError(f"Unexpected handshake from {address}")
            if frame.room_id != self._room.room_id:
                raise ValueError(f"Peer {peer_id} is in room {frame.room_id}")
        except BaseException:
            await ws.close()
            raise
        return ws, frame

    # --- Inbound ---

    async def _handle_inbound(self, ws: ServerConnection) -> None:
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.settings.connect_timeout)
            frame = parse_frame(json.loads(raw))
        except (asyncio.TimeoutError, ConnectionClosed, ValueError):
            logger.debug("Inbound mesh connection failed handshake")
            await ws.close(CLOSE_REJECTED, "handshake failed")
            return

        room = self._room
        if self._closed or room is None or not isinstance(frame, HelloFrame) or frame.room_id != room.room_id:
            await ws.close(CLOSE_REJECTED, "wrong room")
            return
        if frame.peer_id in self._links or frame.peer_id == self.peer_id:
            await ws.close(CLOSE_REJECTED, "duplicate peer")
            return

        await ws.send(self._hello())
        connection = Connection(peer_id=frame.peer_id, transport=self.kind)
        link = _PeerLink(connection=connection, ws=ws, display_name=frame.display_name)
        self._links[frame.peer_id] = link
        self._unreachable.pop(frame.peer_id, None)
        self._set_state(connection, ConnectionState.OPEN)
        logger.info(f"Mesh link from {frame.peer_id} open")
        await self._run_link(link)

    async def _run_link(self, link: _PeerLink) -> None:
        """Read frames until the link closes. Dispatch is sequential per link."""
        try:
            async for raw in link.ws:
                try:
                    frame = parse_frame(json.loads(raw))
                except ValueError:
                    logger.debug(f"Ignoring malformed frame from {link.peer_id}")
                    continue
                if isinstance(frame, MessageFrame) and frame.message.room_id == self._room.room_id:
                    self._dispatch_message(frame.message)
        except ConnectionClosed:
            pass
        finally:
            if self._links.get(link.peer_id) is link:
                del self._links[link.peer_id]
            self._set_state(link.connection, ConnectionState.CLOSED)
            logger.info(f"Mesh link with {link.peer_id} closed")

    # --- Sending ---

    async def send(self, message: WireMessage) -> DeliveryReport:
        if self._closed or self._room is None:
            raise TransportError("Mesh transport is not connected")
        links = [link for link in self._links.values() if link.connection.is_open]
        payload = MessageFrame(message=message).model_dump_json()
        results = await asyncio.gather(*(self._send_one(link, payload) for link in links))
        delivered = sum(1 for ok in results if ok)
        return DeliveryReport(transport=self.kind, recipients=delivered, attempted=len(links))

    async def _send_one(self, link: _PeerLink, payload: str) -> bool:
        try:
            await asyncio.wait_for(link.ws.send(payload), timeout=self.settings.send_timeout)
            return True
        except (ConnectionClosed, asyncio.TimeoutError, OSError):
            logger.warning(f"Send to {link.peer_id} failed", exc_info=True)
            return False
