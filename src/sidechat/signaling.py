"""Peer discovery for the mesh transport.

A `Signaling` oracle maps (room, peer_id) to the address where that peer
accepts mesh connections:

- InMemorySignaling: in-process registry (tests, single-process demos)
- HttpSignaling: client for the intermediary's /signal endpoints
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from .errors import SignalingError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class Signaling(ABC):
    """Abstract discovery oracle."""

    @abstractmethod
    async def register(self, room_id: str, peer_id: str, address: str) -> None:
        """Announce (or refresh) that `peer_id` is reachable at `address` in `room_id`."""
        ...

    @abstractmethod
    async def unregister(self, room_id: str, peer_id: str) -> None:
        """Withdraw a registration. Unknown registrations are ignored."""
        ...

    @abstractmethod
    async def peers(self, room_id: str) -> dict[str, str]:
        """Return {peer_id: address} for every registered peer of the room."""
        ...

    async def close(self) -> None:
        pass


class InMemorySignaling(Signaling):
    """Registry shared by all transports of one process."""

    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    async def register(self, room_id: str, peer_id: str, address: str) -> None:
        async with self._lock:
            self._rooms.setdefault(room_id, {})[peer_id] = address

    async def unregister(self, room_id: str, peer_id: str) -> None:
        async with self._lock:
            members = self._rooms.get(room_id)
            if members is not None:
                members.pop(peer_id, None)
                if not members:
                    del self._rooms[room_id]

    async def peers(self, room_id: str) -> dict[str, str]:
        async with self._lock:
            return dict(self._rooms.get(room_id, {}))


class HttpSignaling(Signaling):
    """Discovery through the intermediary's HTTP API.

    Usage:
        signaling = HttpSignaling("http://localhost:8765")
        await signaling.register(room_id, peer_id, "ws://10.0.0.5:40211")
    """

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._url = url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self._url, timeout=timeout)

    async def _request(self, method: str, path: str, *, json: dict | None = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise SignalingError(f"Signaling request {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise SignalingError(f"Signaling error {response.status_code}: {response.text}")
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def register(self, room_id: str, peer_id: str, address: str) -> None:
        await self._request("PUT", f"/signal/{room_id}/peers/{peer_id}", json={"address": address})

    async def unregister(self, room_id: str, peer_id: str) -> None:
        await self._request("DELETE", f"/signal/{room_id}/peers/{peer_id}")

    async def peers(self, room_id: str) -> dict[str, str]:
        result = await self._request("GET", f"/signal/{room_id}/peers")
        return dict((result or {}).get("peers", {}))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
