"""Local Store: durable messages, rooms and identity plus fuzzy search.

- LocalStore: SQLite file storage
- InMemoryStore: ephemeral SQLite for testing

All methods are safe to call from multiple threads. Writes are serialized
by one lock, so de-duplication by message id is race free.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Iterator

from . import db
from .errors import StoreError, ValidationError
from .metrics import metrics, timed_operation
from .models import (
    ANONYMOUS_DISPLAY_NAME,
    DeliveryState,
    Identity,
    Message,
    Room,
    now_ms,
)
from .sanitize import sanitize_display_name, sanitize_text
from .search import DEFAULT_RESULT_LIMIT, DEFAULT_THRESHOLD, SearchIndex

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_LIMIT = 50


def default_room_name(context_id: str) -> str:
    return f"Room for {context_id}"


@dataclass
class StoreInfo:
    """Information about a store instance."""

    store_type: str
    """Type of store: 'local' or 'in_memory'."""

    location: str
    """Database path, or ':memory:'."""


class LocalStore:
    """SQLite-backed Local Store.

    Usage:
        store = LocalStore(Path("~/.local/share/sidechat/sidechat.db").expanduser())
        store.save_message(message)
        store.get_messages(room_id, limit=50)
    """

    def __init__(self, path: str | Path, search_threshold: float = DEFAULT_THRESHOLD):
        self._path = Path(path)
        self._lock = threading.RLock()
        self._index = SearchIndex(threshold=search_threshold)
        self._closed = False
        try:
            self._conn = db.get_connection(path)
            db.init_db(self._conn)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store at {path}: {e}") from e

    def get_info(self) -> StoreInfo:
        return StoreInfo(store_type="local", location=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _guard(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Hold the store lock and translate sqlite errors into StoreError."""
        with self._lock:
            if self._closed:
                raise StoreError(f"{operation}: store is closed")
            try:
                yield self._conn
            except sqlite3.Error as e:
                metrics.increment("store.errors")
                raise StoreError(f"{operation} failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True
                self._index.invalidate()

    # --- Messages ---

    def _prepare(self, message: Message) -> Message:
        if not message.room_id:
            raise ValidationError("room_id is required")
        if not message.mid:
            raise ValidationError("mid is required")
        message.text = sanitize_text(message.text)
        message.display_name = (
            sanitize_display_name(message.display_name) or ANONYMOUS_DISPLAY_NAME
        )
        if not message.timestamp:
            message.timestamp = now_ms()
        return message

    @timed_operation("store.insert_if_absent")
    def insert_if_absent(self, message: Message) -> tuple[Message, bool]:
        """Persist `message` unless a message with the same mid is stored.

        The message is sanitized and defaulted in place.

        Returns:
            (stored message, created). `created` is False for a duplicate, in
            which case the previously stored record is returned unchanged.

        Raises:
            ValidationError: If room_id or mid is missing.
            StoreError: If the write fails.
        """
        message = self._prepare(message)
        with self._guard("insert_if_absent") as conn:
            seq_id, created = db.insert_message(
                conn,
                mid=message.mid,
                room_id=message.room_id,
                sender_id=message.sender_id,
                display_name=message.display_name,
                text=message.text,
                timestamp=message.timestamp,
                delivery_state=message.delivery_state.value,
            )
            if not created:
                row = db.get_message(conn, message.mid)
                return Message.from_row(row), False
            message.id = seq_id
            self._index.add(message.room_id, message.to_dict())
            return message, True

    def save_message(self, message: Message) -> int:
        """Persist a message and return its sequence id.

        Saving a message whose mid is already stored returns the existing id.
        """
        stored, _ = self.insert_if_absent(message)
        return stored.id

    def has_message(self, mid: str) -> bool:
        with self._guard("has_message") as conn:
            return db.get_message(conn, mid) is not None

    def get_message(self, mid: str) -> Message | None:
        with self._guard("get_message") as conn:
            row = db.get_message(conn, mid)
        return Message.from_row(row) if row else None

    @timed_operation("store.get_messages")
    def get_messages(self, room_id: str, limit: int = DEFAULT_MESSAGE_LIMIT) -> list[Message]:
        """Most recent `limit` messages of a room, in ascending timestamp order."""
        if limit <= 0:
            return []
        with self._guard("get_messages") as conn:
            rows = db.get_recent_messages(conn, room_id, limit)
        return [Message.from_row(row) for row in rows]

    def get_all_messages(self, room_id: str) -> list[Message]:
        with self._guard("get_all_messages") as conn:
            rows = db.get_all_messages(conn, room_id)
        return [Message.from_row(row) for row in rows]

    @timed_operation("store.search_messages")
    def search_messages(
        self, room_id: str, query: str, limit: int = DEFAULT_RESULT_LIMIT
    ) -> list[Message]:
        """Fuzzy search over text and display name within one room.

        Results are ordered by timestamp ascending. An empty query returns [].
        """
        if not query or not query.strip():
            return []
        with self._guard("search_messages") as conn:
            if not self._index.is_built(room_id):
                self._index.build(room_id, db.get_all_messages(conn, room_id))
            ids = self._index.search(room_id, query, limit=limit)
            rows = db.get_messages_by_ids(conn, ids)
        return [Message.from_row(row) for row in rows]

    def update_delivery_state(self, mid: str, state: DeliveryState) -> bool:
        with self._guard("update_delivery_state") as conn:
            return db.update_delivery_state(conn, mid, state.value)

    def get_pending(self, room_id: str) -> list[Message]:
        with self._guard("get_pending") as conn:
            rows = db.get_pending_messages(conn, room_id)
        return [Message.from_row(row) for row in rows]

    @timed_operation("store.purge_older_than")
    def purge_older_than(self, retention: timedelta) -> int:
        """Delete messages older than `retention`. Returns the number removed.

        Maintenance only: a failure is logged and reported as 0 removed.
        """
        cutoff = now_ms() - int(retention.total_seconds() * 1000)
        try:
            with self._guard("purge_older_than") as conn:
                count, room_ids = db.delete_messages_before(conn, cutoff)
                for room_id in room_ids:
                    self._index.invalidate(room_id)
        except StoreError:
            logger.warning("Message purge failed", exc_info=True)
            return 0
        if count:
            logger.info(f"Purged {count} messages older than {retention}")
        return count

    def count_older_than(self, retention: timedelta) -> int:
        cutoff = now_ms() - int(retention.total_seconds() * 1000)
        with self._guard("count_older_than") as conn:
            return db.count_messages_before(conn, cutoff)

    # --- Rooms ---

    def save_room(self, room: Room) -> Room:
        """Insert a room or refresh an existing one. Returns the stored room."""
        name = room.name or default_room_name(room.context_id)
        with self._guard("save_room") as conn:
            db.upsert_room(
                conn,
                room_id=room.room_id,
                context_id=room.context_id,
                created_at=room.created_at,
                last_active_at=room.last_active_at,
                name=name,
            )
            return Room.from_row(db.get_room(conn, room.room_id))

    def touch_room(self, room_id: str, timestamp: int | None = None) -> bool:
        with self._guard("touch_room") as conn:
            return db.touch_room(conn, room_id, timestamp or now_ms())

    def get_room(self, room_id: str) -> Room | None:
        with self._guard("get_room") as conn:
            row = db.get_room(conn, room_id)
        return Room.from_row(row) if row else None

    def room_exists(self, room_id: str) -> bool:
        return self.get_room(room_id) is not None

    def list_rooms(self) -> list[Room]:
        """All rooms, most recently active first."""
        with self._guard("list_rooms") as conn:
            rows = db.list_rooms(conn)
        return [Room.from_row(row) for row in rows]

    # --- Identity ---

    def get_identity(self) -> Identity | None:
        with self._guard("get_identity") as conn:
            row = db.get_identity(conn)
        if row is None:
            return None
        return Identity(id=row["id"], display_name=row["display_name"], last_seen=row["last_seen"])

    def save_identity(self, identity: Identity) -> None:
        with self._guard("save_identity") as conn:
            db.save_identity(conn, identity.id, identity.display_name, identity.last_seen)

    def stats(self) -> dict:
        with self._guard("stats") as conn:
            return db.query_stats(conn)


class InMemoryStore(LocalStore):
    """In-memory store for testing.

    Uses SQLite's :memory: database. All data is lost when the store is closed.
    """

    def __init__(self, search_threshold: float = DEFAULT_THRESHOLD):
        super().__init__(":memory:", search_threshold=search_threshold)

    def get_info(self) -> StoreInfo:
        return StoreInfo(store_type="in_memory", location=":memory:")
