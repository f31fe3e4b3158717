"""FastAPI application: relay and signaling intermediary for sidechat.

Relay (for participants that cannot reach each other directly):
    GET  /rooms/{room_id}/events?peer_id=   Server-Sent Events stream
    POST /rooms/{room_id}/join              announce membership
    POST /rooms/{room_id}/leave
    POST /rooms/{room_id}/messages          fan out to the other members
    GET  /rooms/{room_id}/members

Signaling (peer discovery for the mesh transport):
    PUT    /signal/{room_id}/peers/{peer_id}
    DELETE /signal/{room_id}/peers/{peer_id}
    GET    /signal/{room_id}/peers

Nothing is stored durably; all state lives in memory and is lost on restart.
"""

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from ._version import __version__
from .metrics import metrics
from .models import ANONYMOUS_DISPLAY_NAME
from .sanitize import sanitize_display_name
from .wire import (
    JoinRequest,
    JoinResponse,
    LeaveRequest,
    MemberInfo,
    RelaySendRequest,
    RelaySendResponse,
    SignalRegistration,
)

logger = logging.getLogger(__name__)

# Seconds between SSE keepalive comments
KEEPALIVE_INTERVAL = float(os.environ.get("SIDECHAT_KEEPALIVE", "15"))

# Seconds a signaling registration stays valid without a refresh
SIGNAL_TTL = float(os.environ.get("SIDECHAT_SIGNAL_TTL", "30"))

# Events buffered per listener before it is considered stuck
LISTENER_QUEUE_SIZE = 1000


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


# --- Relay state ---


@dataclass
class RoomMember:
    peer_id: str
    display_name: str = ANONYMOUS_DISPLAY_NAME
    joined: bool = False
    queue: asyncio.Queue | None = None
    """Set while the member has an event stream attached."""

    def info(self) -> MemberInfo:
        return MemberInfo(peer_id=self.peer_id, display_name=self.display_name)


@dataclass
class RoomHub:
    """Room membership and event fan-out.

    Every method runs on the event loop without awaiting, so no locking is needed.
    """

    rooms: dict[str, dict[str, RoomMember]] = field(default_factory=dict)

    def _member(self, room_id: str, peer_id: str) -> RoomMember:
        members = self.rooms.setdefault(room_id, {})
        if peer_id not in members:
            members[peer_id] = RoomMember(peer_id=peer_id)
        return members[peer_id]

    def attach(self, room_id: str, peer_id: str) -> asyncio.Queue:
        """Attach an event stream for a peer, replacing any previous one."""
        member = self._member(room_id, peer_id)
        member.queue = asyncio.Queue(maxsize=LISTENER_QUEUE_SIZE)
        return member.queue

    def detach(self, room_id: str, peer_id: str, queue: asyncio.Queue) -> None:
        """Detach a stream. The member leaves the room when its current stream goes away."""
        member = self.rooms.get(room_id, {}).get(peer_id)
        if member is None or member.queue is not queue:
            return
        member.queue = None
        self.leave(room_id, peer_id)

    def join(self, room_id: str, peer_id: str, display_name: str) -> list[MemberInfo]:
        member = self._member(room_id, peer_id)
        member.display_name = display_name
        if not member.joined:
            member.joined = True
            self.broadcast(room_id, "member-joined", member.info().model_dump(), exclude=peer_id)
            logger.info(f"Peer {peer_id} joined room {room_id}")
        return self.members(room_id)

    def leave(self, room_id: str, peer_id: str) -> bool:
        members = self.rooms.get(room_id)
        if not members or peer_id not in members:
            return False
        member = members[peer_id]
        was_joined = member.joined
        member.joined = False
        if member.queue is None:
            del members[peer_id]
            if not members:
                del self.rooms[room_id]
        if was_joined:
            self.broadcast(room_id, "member-left", {"peer_id": peer_id}, exclude=peer_id)
            logger.info(f"Peer {peer_id} left room {room_id}")
        return was_joined

    def is_member(self, room_id: str, peer_id: str) -> bool:
        member = self.rooms.get(room_id, {}).get(peer_id)
        return member is not None and member.joined

    def members(self, room_id: str) -> list[MemberInfo]:
        return [m.info() for m in self.rooms.get(room_id, {}).values() if m.joined]

    def broadcast(self, room_id: str, event: str, data: Any, exclude: str | None = None) -> int:
        """Queue an event for every joined, attached member except `exclude`.

        Returns the number of members it was queued for.
        """
        delivered = 0
        for member in list(self.rooms.get(room_id, {}).values()):
            if member.peer_id == exclude or not member.joined or member.queue is None:
                continue
            try:
                member.queue.put_nowait((event, data))
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Listener {member.peer_id} in room {room_id} is full, dropping event")
        return delivered


@dataclass
class SignalRegistry:
    """Peer addresses per room with expiry."""

    ttl: float = SIGNAL_TTL
    rooms: dict[str, dict[str, tuple[str, float]]] = field(default_factory=dict)

    def register(self, room_id: str, peer_id: str, address: str) -> None:
        self.rooms.setdefault(room_id, {})[peer_id] = (address, time.monotonic() + self.ttl)

    def unregister(self, room_id: str, peer_id: str) -> bool:
        peers = self.rooms.get(room_id)
        if not peers or peer_id not in peers:
            return False
        del peers[peer_id]
        if not peers:
            del self.rooms[room_id]
        return True

    def peers(self, room_id: str) -> dict[str, str]:
        now = time.monotonic()
        peers = self.rooms.get(room_id, {})
        expired = [pid for pid, (_, expires_at) in peers.items() if expires_at <= now]
        for pid in expired:
            del peers[pid]
        return {pid: address for pid, (address, _) in peers.items()}


_hub: RoomHub | None = None
_signals: SignalRegistry | None = None


def get_hub() -> RoomHub:
    global _hub
    if _hub is None:
        _hub = RoomHub()
    return _hub


def get_signal_registry() -> SignalRegistry:
    global _signals
    if _signals is None:
        _signals = SignalRegistry()
    return _signals


def reset_state() -> None:
    """Drop all relay and signaling state (for testing)."""
    global _hub, _signals
    _hub = None
    _signals = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"sidechat relay {__version__} starting")
    yield
    reset_state()


app = FastAPI(
    title="sidechat",
    description="Relay and signaling service for sidechat rooms",
    version=__version__,
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start_time) * 1000

    # Normalize ids away: /rooms/{id}/messages -> rooms/messages
    parts = request.url.path.strip("/").split("/")
    if parts[0] in ("rooms", "signal") and len(parts) >= 3:
        endpoint = f"{parts[0]}/{parts[2]}"
    elif parts[0] in ("health", "metrics"):
        endpoint = parts[0]
    else:
        endpoint = "other"
    metrics.record_request(endpoint, duration_ms)

    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"
    return response


# --- Relay ---


@app.get("/rooms/{room_id}/events")
async def room_events(room_id: str, peer_id: str = Query(..., min_length=1)):
    """Server-Sent Events stream of a room.

    Emits `connected` once the listener is attached, then `message`,
    `member-joined` and `member-left` events. Membership still requires
    POST /rooms/{room_id}/join. Closing the stream leaves the room.
    """
    hub = get_hub()
    queue = hub.attach(room_id, peer_id)

    async def event_generator():
        try:
            yield format_sse("connected", {"room_id": room_id, "peer_id": peer_id})
            while True:
                try:
                    event, data = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_INTERVAL)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(event, data)
        finally:
            hub.detach(room_id, peer_id, queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/rooms/{room_id}/join", response_model=JoinResponse)
async def join_room(room_id: str, request: JoinRequest):
    display_name = sanitize_display_name(request.display_name) or ANONYMOUS_DISPLAY_NAME
    members = get_hub().join(room_id, request.peer_id, display_name)
    return JoinResponse(room_id=room_id, members=members)


@app.post("/rooms/{room_id}/leave")
async def leave_room(room_id: str, request: LeaveRequest):
    return {"ok": get_hub().leave(room_id, request.peer_id)}


@app.post("/rooms/{room_id}/messages", response_model=RelaySendResponse)
async def send_room_message(room_id: str, request: RelaySendRequest):
    """Fan a message out to every other attached member of the room."""
    hub = get_hub()
    if request.message.room_id != room_id:
        raise HTTPException(400, "Message room_id does not match the URL")
    if request.message.sender_id != request.peer_id:
        raise HTTPException(400, "Message sender_id does not match peer_id")
    if not hub.is_member(room_id, request.peer_id):
        raise HTTPException(403, f"Peer {request.peer_id} has not joined room {room_id}")

    delivered = hub.broadcast(room_id, "message", request.message.model_dump(), exclude=request.peer_id)
    metrics.increment("relay.messages")
    return RelaySendResponse(mid=request.message.mid, delivered=delivered)


@app.get("/rooms/{room_id}/members")
async def list_members(room_id: str):
    return {"room_id": room_id, "members": [m.model_dump() for m in get_hub().members(room_id)]}


# --- Signaling ---


@app.put("/signal/{room_id}/peers/{peer_id}")
async def register_peer(room_id: str, peer_id: str, registration: SignalRegistration):
    registry = get_signal_registry()
    registry.register(room_id, peer_id, registration.address)
    return {"ok": True, "ttl": registry.ttl}


@app.delete("/signal/{room_id}/peers/{peer_id}")
async def unregister_peer(room_id: str, peer_id: str):
    return {"ok": get_signal_registry().unregister(room_id, peer_id)}


@app.get("/signal/{room_id}/peers")
async def list_peers(room_id: str):
    return {"room_id": room_id, "peers": get_signal_registry().peers(room_id)}


# --- Operations ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics")
def get_metrics():
    """In-process metrics plus current relay occupancy."""
    hub = get_hub()
    data = metrics.to_dict()
    data["relay"] = {
        "rooms": len(hub.rooms),
        "members": sum(len(hub.members(room_id)) for room_id in hub.rooms),
    }
    return data
