"""SQLite layer for the Local Store.

Plain functions over an explicit connection. Higher-level behaviour
(defaults, sanitization, locking, search index upkeep) lives in
`sidechat.store`.

Usage:
    conn = get_connection("/path/to/sidechat.db")
    init_db(conn)
    insert_message(conn, mid=..., room_id=..., ...)

    # In-memory for testing
    conn = get_connection(":memory:")
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 2

# Single row key for the identity table
INSTALLATION_KEY = "local"


# --- Connection Management ---


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    """Open a database connection.

    Args:
        db_path: Path to the database file, or ":memory:".

    Returns:
        SQLite connection with row_factory set to sqlite3.Row. The connection
        may be used from other threads; callers serialize access.
    """
    if str(db_path) == ":memory:":
        conn = sqlite3.connect(":memory:", check_same_thread=False)
    else:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        # WAL so readers are not blocked by the writer
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def _rows_to_dicts(rows: list) -> list[dict]:
    return [dict(row) for row in rows]


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    return dict(row) if row is not None else None


# --- Schema and Migrations ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        mid TEXT NOT NULL UNIQUE,
        room_id TEXT NOT NULL,
        sender_id TEXT NOT NULL,
        display_name TEXT NOT NULL,
        text TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        delivery_state TEXT NOT NULL DEFAULT 'pending'
    );

    CREATE INDEX IF NOT EXISTS idx_messages_room_ts
        ON messages(room_id, timestamp);

    CREATE TABLE IF NOT EXISTS rooms (
        room_id TEXT PRIMARY KEY,
        context_id TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        last_active_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS identity (
        installation TEXT PRIMARY KEY,
        id TEXT NOT NULL,
        display_name TEXT NOT NULL,
        last_seen INTEGER NOT NULL
    );
"""


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get the current schema version. Returns 0 if nothing has been applied."""
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return column in [row[1] for row in cursor.fetchall()]


def _migrate_001_add_room_name(conn: sqlite3.Connection) -> None:
    """Migration 001: Add a display name to rooms."""
    if not _column_exists(conn, "rooms", "name"):
        conn.execute("ALTER TABLE rooms ADD COLUMN name TEXT")
    conn.commit()


def _migrate_002_add_rooms_activity_index(conn: sqlite3.Connection) -> None:
    """Migration 002: Index rooms by recent activity."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_rooms_last_active ON rooms(last_active_at DESC)"
    )
    conn.commit()


MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add name column to rooms", _migrate_001_add_room_name),
    (2, "Add last_active_at index to rooms", _migrate_002_add_rooms_activity_index),
]


def run_migrations(conn: sqlite3.Connection) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
            except sqlite3.Error as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and apply migrations."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def reset_db(conn: sqlite3.Connection) -> None:
    """Drop all tables (for testing)."""
    conn.executescript("""
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS rooms;
        DROP TABLE IF EXISTS identity;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    init_db(conn)


# --- Messages ---


def insert_message(
    conn: sqlite3.Connection,
    mid: str,
    room_id: str,
    sender_id: str,
    display_name: str,
    text: str,
    timestamp: int,
    delivery_state: str,
) -> tuple[int, bool]:
    """Insert a message unless one with the same mid exists.

    Returns:
        (sequence id, created). When the mid already exists the existing
        row's id is returned with created=False.
    """
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO messages
            (mid, room_id, sender_id, display_name, text, timestamp, delivery_state)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (mid, room_id, sender_id, display_name, text, timestamp, delivery_state),
    )
    created = cursor.rowcount == 1
    if created:
        seq_id = cursor.lastrowid
    else:
        row = conn.execute("SELECT id FROM messages WHERE mid = ?", (mid,)).fetchone()
        seq_id = row["id"]
    conn.commit()
    return seq_id, created


def get_message(conn: sqlite3.Connection, mid: str) -> dict | None:
    cursor = conn.execute("SELECT * FROM messages WHERE mid = ?", (mid,))
    return _row_to_dict(cursor.fetchone())


def get_recent_messages(conn: sqlite3.Connection, room_id: str, limit: int) -> list[dict]:
    """Most recent `limit` messages of a room, oldest first."""
    cursor = conn.execute(
        """
        SELECT * FROM messages
        WHERE room_id = ?
        ORDER BY timestamp DESC, id DESC
        LIMIT ?
        """,
        (room_id, limit),
    )
    rows = _rows_to_dicts(cursor.fetchall())
    rows.reverse()
    return rows


def get_all_messages(conn: sqlite3.Connection, room_id: str) -> list[dict]:
    """Every message of a room, oldest first."""
    cursor = conn.execute(
        "SELECT * FROM messages WHERE room_id = ? ORDER BY timestamp, id",
        (room_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


def get_messages_by_ids(conn: sqlite3.Connection, ids: list[int]) -> list[dict]:
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    cursor = conn.execute(
        f"SELECT * FROM messages WHERE id IN ({placeholders}) ORDER BY timestamp, id",
        ids,
    )
    return _rows_to_dicts(cursor.fetchall())


def get_pending_messages(conn: sqlite3.Connection, room_id: str) -> list[dict]:
    cursor = conn.execute(
        """
        SELECT * FROM messages
        WHERE room_id = ? AND delivery_state = 'pending'
        ORDER BY timestamp, id
        """,
        (room_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


def update_delivery_state(conn: sqlite3.Connection, mid: str, state: str) -> bool:
    cursor = conn.execute(
        "UPDATE messages SET delivery_state = ? WHERE mid = ?",
        (state, mid),
    )
    conn.commit()
    return cursor.rowcount > 0


def delete_messages_before(conn: sqlite3.Connection, cutoff: int) -> tuple[int, list[str]]:
    """Delete messages with timestamp < cutoff.

    Returns:
        (number deleted, ids of the rooms that lost messages)
    """
    cursor = conn.execute(
        "SELECT DISTINCT room_id FROM messages WHERE timestamp < ?",
        (cutoff,),
    )
    room_ids = [row["room_id"] for row in cursor.fetchall()]
    cursor = conn.execute("DELETE FROM messages WHERE timestamp < ?", (cutoff,))
    conn.commit()
    return cursor.rowcount, room_ids


def count_messages_before(conn: sqlite3.Connection, cutoff: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM messages WHERE timestamp < ?", (cutoff,)
    ).fetchone()
    return row["n"]


# --- Rooms ---


def upsert_room(
    conn: sqlite3.Connection,
    room_id: str,
    context_id: str,
    created_at: int,
    last_active_at: int,
    name: str | None = None,
) -> None:
    """Insert a room, or refresh last_active_at (and name, if given) when it exists."""
    conn.execute(
        """
        INSERT INTO rooms (room_id, context_id, created_at, last_active_at, name)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(room_id) DO UPDATE SET
            last_active_at = MAX(rooms.last_active_at, excluded.last_active_at),
            name = COALESCE(excluded.name, rooms.name)
        """,
        (room_id, context_id, created_at, last_active_at, name),
    )
    conn.commit()


def touch_room(conn: sqlite3.Connection, room_id: str, timestamp: int) -> bool:
    cursor = conn.execute(
        "UPDATE rooms SET last_active_at = MAX(last_active_at, ?) WHERE room_id = ?",
        (timestamp, room_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def get_room(conn: sqlite3.Connection, room_id: str) -> dict | None:
    cursor = conn.execute("SELECT * FROM rooms WHERE room_id = ?", (room_id,))
    return _row_to_dict(cursor.fetchone())


def list_rooms(conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute("SELECT * FROM rooms ORDER BY last_active_at DESC, room_id")
    return _rows_to_dicts(cursor.fetchall())


# --- Identity ---


def get_identity(conn: sqlite3.Connection, installation: str = INSTALLATION_KEY) -> dict | None:
    cursor = conn.execute(
        "SELECT id, display_name, last_seen FROM identity WHERE installation = ?",
        (installation,),
    )
    return _row_to_dict(cursor.fetchone())


def save_identity(
    conn: sqlite3.Connection,
    identity_id: str,
    display_name: str,
    last_seen: int,
    installation: str = INSTALLATION_KEY,
) -> None:
    """Write the installation's identity. An existing `id` is never replaced."""
    conn.execute(
        """
        INSERT INTO identity (installation, id, display_name, last_seen)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(installation) DO UPDATE SET
            display_name = excluded.display_name,
            last_seen = excluded.last_seen
        """,
        (installation, identity_id, display_name, last_seen),
    )
    conn.commit()


def query_stats(conn: sqlite3.Connection) -> dict[str, Any]:
    """Row counts per table."""
    messages = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
    rooms = conn.execute("SELECT COUNT(*) FROM rooms").fetchone()[0]
    return {"messages": messages, "rooms": rooms, "schema_version": get_schema_version(conn)}
