"""sidechat - Real-time chat alongside shared content.

Participants watching the same content join a room and exchange messages
peer-to-peer, falling back to a relay when direct links are impossible.
History is kept locally and is fuzzy-searchable.

Usage:
    from sidechat import Sidechat, SidechatOptions

    async with Sidechat() as chat:
        chat.subscribe(print)
        info = await chat.create_room("video-123")   # share info.room_id
        await chat.send_message("Hello!")

    # Elsewhere
    async with Sidechat() as chat:
        info = await chat.join_room(room_id)
        chat.search_messages(room_id, "hello")
"""

from sidechat._version import __version__
from sidechat.client import Sidechat
from sidechat.errors import (
    SessionError,
    SidechatError,
    StoreError,
    TransportError,
    ValidationError,
)
from sidechat.events import Event, EventType
from sidechat.models import DeliveryState, Message, Room, RoomInfo, TransportKind
from sidechat.options import SidechatConfigError, SidechatOptions

__all__ = [
    "__version__",
    "Sidechat",
    "SidechatOptions",
    "SidechatConfigError",
    "SidechatError",
    "SessionError",
    "StoreError",
    "TransportError",
    "ValidationError",
    "Event",
    "EventType",
    "DeliveryState",
    "Message",
    "Room",
    "RoomInfo",
    "TransportKind",
]
