"""CLI for sidechat.

Chat from a terminal, inspect the Local Store, and run the relay service.

Configuration lives in ~/.config/sidechat/config.yaml (see sidechat.config);
the Local Store defaults to ~/.local/share/sidechat/sidechat.db.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import cyclopts

from . import jobs
from .client import Sidechat
from .config import GlobalConfig, get_config_dir, get_global_config_path
from .errors import SidechatError, ValidationError
from .events import Event, EventType
from .models import Message, RoomInfo
from .options import SidechatConfigError, SidechatOptions
from .sanitize import sanitize_display_name

app = cyclopts.App(
    name="sidechat",
    help="Real-time chat alongside shared content, peer-to-peer with relay fallback",
)

SLASH_HELP = "/quit  /retry  /search QUERY  /name NAME  /who"


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _options(
    db: str | None = None,
    relay_url: str | None = None,
    no_mesh: bool = False,
    no_relay: bool = False,
) -> SidechatOptions:
    try:
        return SidechatOptions(
            db_path=db,
            relay_url=relay_url,
            mesh=False if no_mesh else True,
            relay=False if no_relay else True,
        )
    except SidechatConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _format_message(message: Message) -> str:
    marker = "" if message.delivery_state.value in ("sent", "received") else f" ({message.delivery_state.value})"
    return f"[{_format_time(message.timestamp)}] {message.display_name}: {message.text}{marker}"


# --- Interactive chat ---


def _print_event(event: Event) -> None:
    if event.type is EventType.MESSAGE_RECEIVED:
        print(_format_message(event.payload))
    elif event.type is EventType.CONNECTION_STATE_CHANGED:
        change = event.payload
        who = change.peer_id or change.transport.value
        print(f"* {who} {change.state.value}")
    elif event.type is EventType.ERROR:
        print(f"! {event.payload.kind}: {event.payload.message}")


async def _read_line(prompt: str = "") -> str:
    loop = asyncio.get_running_loop()
    if prompt:
        print(prompt, end="", flush=True)
    return await loop.run_in_executor(None, sys.stdin.readline)


async def _chat_loop(chat: Sidechat, info: RoomInfo) -> None:
    print(f"Room {info.room_id} via {info.transport.value}. Share the room id to invite others.")
    print(SLASH_HELP)
    for message in info.messages:
        print(_format_message(message))

    subscription = chat.subscribe(_print_event)
    try:
        while True:
            line = await _read_line()
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line == "/quit":
                break
            if line == "/retry":
                retried = await chat.retry_pending()
                print(f"* retried {len(retried)} pending messages")
            elif line.startswith("/search "):
                for message in chat.search_messages(info.room_id, line[len("/search "):]):
                    print(_format_message(message))
            elif line.startswith("/name "):
                identity = chat.set_display_name(line[len("/name "):])
                print(f"* you are now {identity.display_name}")
            elif line == "/who":
                for connection in chat.session.connections:
                    print(f"* {connection.peer_id} ({connection.transport.value}, {connection.state.value})")
            else:
                try:
                    message = await chat.send_message(line)
                except ValidationError as e:
                    print(f"! {e}")
                    continue
                if message.delivery_state.value != "sent":
                    print(f"* {message.delivery_state.value}")
    finally:
        subscription.unsubscribe()


async def _run_chat(options: SidechatOptions, context_id: str | None, room_id: str | None, name: str | None):
    async with Sidechat(options) as chat:
        try:
            if room_id is not None:
                info = await chat.join_room(room_id)
            else:
                info = await chat.create_room(context_id, name=name)
        except SidechatError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        await _chat_loop(chat, info)


@app.command
def create(
    context_id: str,
    *,
    name: str | None = None,
    db: str | None = None,
    relay_url: str | None = None,
    no_mesh: bool = False,
    no_relay: bool = False,
    verbose: bool = False,
):
    """Create a room for CONTEXT_ID (e.g. a video id) and start chatting.

    --name: Room display name (default "Room for CONTEXT_ID")
    --no-mesh: Use the relay only
    --no-relay: Use the mesh only
    """
    _setup_logging(verbose)
    options = _options(db, relay_url, no_mesh, no_relay)
    asyncio.run(_run_chat(options, context_id, None, name))


@app.command
def join(
    room_id: str,
    *,
    db: str | None = None,
    relay_url: str | None = None,
    no_mesh: bool = False,
    no_relay: bool = False,
    verbose: bool = False,
):
    """Join an existing room and start chatting."""
    _setup_logging(verbose)
    options = _options(db, relay_url, no_mesh, no_relay)
    asyncio.run(_run_chat(options, None, room_id, None))


# --- Local Store ---


def _open(db: str | None) -> Sidechat:
    return Sidechat(_options(db))


def _close(chat: Sidechat) -> None:
    asyncio.run(chat.close())


@app.command
def rooms(*, db: str | None = None, json_output: bool = False):
    """List stored rooms, most recently active first."""
    chat = _open(db)
    try:
        stored = chat.list_rooms()
        if json_output:
            print_json([room.to_dict() for room in stored])
            return
        if not stored:
            print("No rooms")
            return
        for room in stored:
            print(f"{room.room_id}  {room.name or ''}  (last active {_format_time(room.last_active_at)})")
    finally:
        _close(chat)


@app.command
def history(room_id: str, *, limit: int = 50, db: str | None = None, json_output: bool = False):
    """Show the most recent messages of a room."""
    chat = _open(db)
    try:
        messages = chat.get_messages(room_id, limit=limit)
        if json_output:
            print_json([m.to_dict() for m in messages])
            return
        if not messages:
            print("No messages in room")
            return
        for message in messages:
            print(_format_message(message))
    finally:
        _close(chat)


@app.command
def search(room_id: str, query: str, *, db: str | None = None, json_output: bool = False):
    """Fuzzy search the messages of a room."""
    chat = _open(db)
    try:
        messages = chat.search_messages(room_id, query)
        if json_output:
            print_json([m.to_dict() for m in messages])
            return
        if not messages:
            print("No matches")
            return
        for message in messages:
            print(_format_message(message))
    finally:
        _close(chat)


@app.command
def name(display_name: str, *, db: str | None = None):
    """Set your display name."""
    if not sanitize_display_name(display_name):
        print("Error: display name is empty after sanitizing", file=sys.stderr)
        sys.exit(1)
    chat = _open(db)
    try:
        identity = chat.set_display_name(display_name)
        print(f"Display name: {identity.display_name}")
    finally:
        _close(chat)


@app.command
def whoami(*, db: str | None = None):
    """Show your identity."""
    chat = _open(db)
    try:
        print_json(chat.identity().to_dict())
    finally:
        _close(chat)


@app.command
def purge(*, days: int | None = None, dry_run: bool = False, db: str | None = None):
    """Delete messages older than the retention period.

    --days: Retention in days (default from config, 30)
    --dry-run: Show what would be deleted without deleting
    """
    chat = _open(db)
    try:
        retention_days = days or chat.options.retention_days
        result = jobs.process_retention(chat.store, retention_days, dry_run=dry_run)
        if dry_run:
            print(f"Would delete {result} messages older than {retention_days} days")
        else:
            print(f"Deleted {result} messages older than {retention_days} days")
    finally:
        _close(chat)


@app.command
def export(room_id: str, path: Path, *, db: str | None = None):
    """Export the messages of a room to a JSONL file."""
    chat = _open(db)
    try:
        count = jobs.export_room_history(chat.store, room_id, path)
        print(f"Exported {count} messages to {path}")
    finally:
        _close(chat)


@app.command(name="import")
def import_history(path: Path, *, db: str | None = None):
    """Import messages from a JSONL export (already stored messages are skipped)."""
    chat = _open(db)
    try:
        count = jobs.import_room_history(chat.store, path)
        print(f"Imported {count} messages from {path}")
    finally:
        _close(chat)


@app.command
def config(*, relay_url: str | None = None, signaling_url: str | None = None, retention_days: int | None = None):
    """Show the configuration, or update it with the given values."""
    cfg = GlobalConfig.load()
    if relay_url or signaling_url or retention_days:
        if relay_url:
            cfg.relay_url = relay_url
        if signaling_url:
            cfg.signaling_url = signaling_url
        if retention_days:
            cfg.retention_days = retention_days
        cfg.save()
        print(f"Saved {get_global_config_path()}")
    print(f"Config directory: {get_config_dir()}")
    print_json(cfg.to_dict())


# --- Server Command ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8765,
    reload: bool = False,
    verbose: bool = False,
):
    """Run the relay and signaling service."""
    import uvicorn

    _setup_logging(verbose)
    uvicorn.run(
        "sidechat.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="debug" if verbose else "info",
    )


if __name__ == "__main__":
    app()
