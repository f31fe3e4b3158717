"""Relay transport: all traffic goes through the sidechat intermediary.

One logical channel per session: a Server-Sent Events stream for inbound
events plus plain HTTP requests for join, leave and send. Readiness is the
stream's `connected` event; membership is then announced explicitly and
membership changes arrive as events.

A dropped stream is re-opened with bounded exponential backoff and the
room re-joined. When retries are exhausted the relay connection is CLOSED.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

import httpx

from .errors import ConnectionRefused, HandshakeTimeout, TransportError
from .metrics import metrics
from .models import Connection, ConnectionState, RoomDescriptor, TransportKind
from .transport import ConnectionHandle, DeliveryReport, Transport, backoff_delay
from .wire import JoinResponse, WireMessage

logger = logging.getLogger(__name__)

RELAY_PEER_ID = "relay"


@dataclass
class RelaySettings:
    """Tunables for the relay transport."""

    connect_timeout: float = 5.0
    request_timeout: float = 5.0
    max_retries: int = 3
    backoff_base: float = 0.2
    backoff_max: float = 2.0


def _map_error(error: Exception, action: str) -> TransportError:
    if isinstance(error, TransportError):
        return error
    if isinstance(error, httpx.ConnectError):
        return ConnectionRefused(f"Relay refused {action}: {error}")
    if isinstance(error, httpx.TimeoutException):
        return HandshakeTimeout(f"Relay timed out during {action}: {error}")
    return TransportError(f"Relay {action} failed: {error}")


class RelayTransport(Transport):
    """Client side of the relay.

    Usage:
        transport = RelayTransport(peer_id, "http://localhost:8765")
        await transport.connect(RoomDescriptor(room_id))
    """

    kind = TransportKind.RELAY

    def __init__(
        self,
        peer_id: str,
        url: str,
        settings: RelaySettings | None = None,
        display_name: str = "",
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(peer_id, display_name)
        self.url = url.rstrip("/")
        self.settings = settings or RelaySettings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.url, timeout=self.settings.request_timeout
        )
        self._room: RoomDescriptor | None = None
        self._relay = Connection(peer_id=RELAY_PEER_ID, transport=self.kind)
        self._members: dict[str, Connection] = {}
        self._ready = asyncio.Event()
        self._joined = False
        self._stream_task: asyncio.Task | None = None
        self._join_task: asyncio.Task | None = None
        self._reconnect_attempt = 0
        self._closed = False

    @property
    def connections(self) -> list[Connection]:
        return [self._relay] + list(self._members.values())

    @property
    def members(self) -> list[str]:
        return sorted(pid for pid, conn in self._members.items() if conn.is_open)

    # --- Lifecycle ---

    async def connect(self, room: RoomDescriptor) -> ConnectionHandle:
        if self._closed:
            raise TransportError("Relay transport already disconnected")
        if self._room is not None:
            raise TransportError(f"Relay transport already connected to {self._room.room_id}")
        self._room = room

        try:
            self._stream_task = asyncio.create_task(self._stream_loop())
            await self._wait_ready()
            await self._join()
        except BaseException:
            await self.disconnect()
            raise

        self._set_state(self._relay, ConnectionState.OPEN)
        logger.info(f"Relay ready in room {room.room_id} via {self.url}")
        return ConnectionHandle(
            transport=self.kind,
            room_id=room.room_id,
            local_peer_id=self.peer_id,
            address=self.url,
        )

    async def _wait_ready(self) -> None:
        ready = asyncio.create_task(self._ready.wait())
        try:
            await asyncio.wait(
                {ready, self._stream_task},
                timeout=self.settings.connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
        if self._ready.is_set():
            return
        if self._stream_task.done() and not self._stream_task.cancelled():
            error = self._stream_task.exception()
            if error is not None:
                raise error
        raise HandshakeTimeout(f"Relay did not confirm the event stream within {self.settings.connect_timeout}s")

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._joined and self._room is not None:
            try:
                await self._client.post(
                    f"/rooms/{self._room.room_id}/leave",
                    json={"peer_id": self.peer_id},
                    timeout=self.settings.request_timeout,
                )
            except httpx.HTTPError:
                logger.warning("Could not announce leave to relay", exc_info=True)
            self._joined = False

        for task in (self._join_task, self._stream_task):
            if task is None:
                continue
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            elif not task.cancelled() and task.exception() is not None:
                logger.debug(f"Relay task ended with {task.exception()!r}")

        for connection in list(self._members.values()):
            self._set_state(connection, ConnectionState.CLOSED)
        self._members.clear()
        if self._relay.is_open:
            self._set_state(self._relay, ConnectionState.CLOSED)

        if self._owns_client:
            await self._client.aclose()
        logger.info("Relay transport disconnected")

    # --- Membership ---

    async def _join(self) -> None:
        try:
            response = await self._client.post(
                f"/rooms/{self._room.room_id}/join",
                json={"peer_id": self.peer_id, "display_name": self.display_name or "Anonymous"},
            )
        except httpx.HTTPError as e:
            raise _map_error(e, "join") from e
        if response.status_code >= 400:
            raise ConnectionRefused(f"Relay rejected join: {response.status_code} {response.text}")

        try:
            joined = JoinResponse.model_validate(response.json())
        except ValueError as e:
            raise TransportError(f"Relay sent an invalid join response: {e}") from e
        self._joined = True
        for member in joined.members:
            self._member_open(member.peer_id)

    def _member_open(self, peer_id: str) -> None:
        if not peer_id or peer_id == self.peer_id:
            return
        existing = self._members.get(peer_id)
        if existing is not None and existing.is_open:
            return
        connection = Connection(peer_id=peer_id, transport=self.kind)
        self._members[peer_id] = connection
        self._set_state(connection, ConnectionState.OPEN)

    def _member_closed(self, peer_id: str) -> None:
        connection = self._members.pop(peer_id, None)
        if connection is not None:
            self._set_state(connection, ConnectionState.CLOSED)

    async def _rejoin(self) -> None:
        try:
            await self._join()
        except TransportError:
            logger.warning("Relay re-join failed", exc_info=True)

    # --- Event stream ---

    async def _stream_loop(self) -> None:
        while True:
            try:
                await self._read_stream()
            except (httpx.HTTPError, TransportError) as e:
                if not self._ready.is_set():
                    raise _map_error(e, "event stream") from e
                logger.warning(f"Relay event stream dropped: {e}")
            else:
                if not self._ready.is_set():
                    raise HandshakeTimeout("Relay closed the event stream before confirming it")
                logger.warning("Relay event stream ended")

            if self._closed:
                return
            if self._reconnect_attempt >= self.settings.max_retries:
                logger.error(f"Relay unreachable after {self._reconnect_attempt} reconnect attempts")
                metrics.increment("relay.gave_up")
                for peer_id in list(self._members):
                    self._member_closed(peer_id)
                self._set_state(self._relay, ConnectionState.CLOSED)
                return
            delay = backoff_delay(
                self._reconnect_attempt, self.settings.backoff_base, self.settings.backoff_max
            )
            self._reconnect_attempt += 1
            metrics.increment("relay.reconnects")
            await asyncio.sleep(delay)

    async def _read_stream(self) -> None:
        timeout = httpx.Timeout(self.settings.connect_timeout, read=None)
        async with self._client.stream(
            "GET",
            f"/rooms/{self._room.room_id}/events",
            params={"peer_id": self.peer_id},
            timeout=timeout,
        ) as response:
            if response.status_code >= 400:
                raise ConnectionRefused(f"Relay refused event stream: {response.status_code}")

            event: str | None = None
            data: list[str] = []
            async for line in response.aiter_lines():
                if line == "":
                    if event is not None or data:
                        self._handle_event(event or "message", "\n".join(data))
                    event, data = None, []
                    continue
                if line.startswith(":"):
                    continue
                name, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if name == "event":
                    event = value
                elif name == "data":
                    data.append(value)

    def _handle_event(self, event: str, raw: str) -> None:
        try:
            payload = json.loads(raw) if raw else {}
        except ValueError:
            logger.debug(f"Ignoring malformed relay event {event!r}")
            return
        if not isinstance(payload, dict):
            logger.debug(f"Ignoring relay event {event!r} with a non-object payload")
            return

        if event == "connected":
            reconnect = self._ready.is_set()
            self._ready.set()
            self._reconnect_attempt = 0
            if reconnect and self._joined and not self._closed:
                logger.info("Relay event stream restored, re-joining")
                self._join_task = asyncio.create_task(self._rejoin())
        elif event == "message":
            try:
                message = WireMessage.model_validate(payload.get("message", payload))
            except ValueError:
                logger.debug("Ignoring invalid relay message")
                return
            if self._room is not None and message.room_id == self._room.room_id:
                self._dispatch_message(message)
        elif event == "member-joined":
            self._member_open(payload.get("peer_id", ""))
        elif event == "member-left":
            self._member_closed(payload.get("peer_id", ""))
        else:
            logger.debug(f"Ignoring unknown relay event {event!r}")

    # --- Sending ---

    async def send(self, message: WireMessage) -> DeliveryReport:
        if self._closed or not self._joined or self._relay.is_finished:
            raise TransportError("Relay transport is not connected")
        try:
            response = await self._client.post(
                f"/rooms/{self._room.room_id}/messages",
                json={"peer_id": self.peer_id, "message": message.model_dump()},
            )
        except httpx.HTTPError as e:
            raise _map_error(e, "send") from e
        if response.status_code >= 400:
            raise TransportError(f"Relay error {response.status_code}: {response.text}")

        try:
            delivered = int(response.json()["delivered"])
        except (ValueError, TypeError, KeyError) as e:
            raise TransportError(f"Relay sent an invalid send response: {e}") from e
        return DeliveryReport(
            transport=self.kind,
            recipients=delivered,
            attempted=max(delivered, len(self.members)),
        )
