"""Maintenance jobs for the Local Store.

Retention:
- Messages older than the retention period (default 30 days) are deleted
- Run on client start-up or on demand via `sidechat purge`

History export:
- One room's messages as JSONL, one message per line, oldest first
- Importing an export skips messages that are already stored (by mid)
"""

import json
import logging
from datetime import timedelta
from pathlib import Path

from .config import DEFAULT_RETENTION_DAYS
from .models import Message
from .store import LocalStore

logger = logging.getLogger(__name__)


def process_retention(
    store: LocalStore,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    dry_run: bool = False,
) -> int:
    """
    Remove messages older than `retention_days`.

    Args:
        store: The Local Store
        retention_days: Age in days after which messages are removed
        dry_run: If True, just count without modifying

    Returns:
        Number of messages removed (or that would be removed)
    """
    retention = timedelta(days=retention_days)
    if dry_run:
        return store.count_older_than(retention)
    return store.purge_older_than(retention)


def export_room_history(store: LocalStore, room_id: str, path: str | Path) -> int:
    """
    Write every stored message of a room to a JSONL file.

    Returns the number of messages written.
    """
    messages = store.get_all_messages(room_id)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        for message in messages:
            f.write(json.dumps(message.to_dict()) + "\n")

    logger.info(f"Exported {len(messages)} messages of room {room_id} to {path}")
    return len(messages)


def load_room_history(path: str | Path) -> list[Message]:
    """
    Read messages from a JSONL export.

    Args:
        path: Path to JSONL file written by export_room_history

    Returns:
        List of messages (sequence ids are not carried over)
    """
    messages = []

    with open(path) as f:
        for line in f:
            if line.strip():
                data = json.loads(line)
                data["id"] = None
                messages.append(Message.from_row(data))

    return messages


def import_room_history(store: LocalStore, path: str | Path) -> int:
    """
    Store the messages of a JSONL export, skipping ones already present.

    Returns the number of messages added.
    """
    added = 0
    for message in load_room_history(path):
        _, created = store.insert_if_absent(message)
        if created:
            added += 1
    return added
