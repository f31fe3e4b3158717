"""Session event feed.

Observers (a UI layer, the CLI, tests) learn about a session through events:

    - MESSAGE_RECEIVED: a new inbound message was stored (payload: Message)
    - MESSAGE_SENT: a locally authored message was stored and handed to the
      transport (payload: Message, with its delivery state at that point)
    - CONNECTION_STATE_CHANGED: a transport attempt or peer link changed
      state (payload: ConnectionChange)
    - ERROR: a recoverable failure worth showing inline (payload: ErrorInfo)

Two ways to consume:
    - subscribe(handler) -> Subscription, with handlers called synchronously
    - stream(), an async iterator backed by a queue

Ordering: events are published in the order the session observes them.
Messages from one connection keep their arrival order; there is no total
order across several simultaneous mesh peers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable

from .models import ConnectionState, SessionState, TransportKind

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    CONNECTION_STATE_CHANGED = "connection_state_changed"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionChange:
    """Payload of CONNECTION_STATE_CHANGED.

    `peer_id` is None for a transport-level change (a bring-up attempt or the
    session closing) and set for an individual peer link.
    """

    transport: TransportKind
    state: ConnectionState
    peer_id: str | None = None
    session_state: SessionState | None = None
    detail: str | None = None


@dataclass(frozen=True)
class ErrorInfo:
    """Payload of ERROR."""

    kind: str
    message: str
    mid: str | None = None


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Any


Handler = Callable[[Event], None]


class Subscription:
    """Handle returned by `EventFeed.subscribe`."""

    def __init__(self, feed: "EventFeed", handler: Handler):
        self._feed = feed
        self._handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self._active:
            self._feed._remove(self._handler)
            self._active = False


class EventFeed:
    """Fan-out of session events to any number of subscribers."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []

    def subscribe(self, handler: Handler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove(self, handler: Handler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def publish(self, event_type: EventType, payload: Any) -> Event:
        """Deliver an event to every current subscriber.

        A handler that raises is logged; the remaining handlers still run.
        """
        event = Event(event_type, payload)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.warning(f"Event handler failed for {event_type.value}", exc_info=True)
        return event

    async def stream(self, maxsize: int = 0) -> AsyncIterator[Event]:
        """Yield events as they are published, until the consumer stops.

        Usage:
            async for event in feed.stream():
                ...
        """
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

        def _enqueue(event: Event) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event stream full, dropping {event.type.value}")

        subscription = self.subscribe(_enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            subscription.unsubscribe()
