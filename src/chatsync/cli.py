"""CLI for chatsync.

Reads ~/.config/chatsync/config.yaml (see chatsync.config) and talks to the
configured store over HTTP. Useful for inspecting rooms, tailing a room's
messages, and sending test messages.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import cyclopts

from .client import Chat
from .config import GlobalConfig, get_config_dir, init_wizard
from .models import MessageWithUser
from .options import ChatConfigError, ChatOptions

app = cyclopts.App(
    name="chatsync",
    help="Reactive chat client for a remote document store",
)


def get_config() -> GlobalConfig:
    """Get global config, running wizard if needed."""
    if not GlobalConfig.exists():
        print("No configuration found. Let's set one up.\n")
        return init_wizard()
    return GlobalConfig.load()


def make_options(cfg: GlobalConfig, **overrides) -> ChatOptions:
    try:
        return ChatOptions(
            url=cfg.url,
            bearer_token=cfg.bearer_token,
            user_id=cfg.user_id,
            user_collection_key=cfg.user_collection_key,
            retention=cfg.retention(),
            rbac_config=dict(cfg.rbac),
            **overrides,
        )
    except ChatConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


async def open_chat(**overrides) -> Chat:
    return await Chat.create(make_options(get_config(), **overrides))


def format_entry(entry: MessageWithUser) -> str:
    sender = entry.user.name if entry.user is not None and entry.user.name else entry.message.user_id[:8]
    created = (entry.message.created_on or "")[:19]
    flags = ""
    if entry.message.is_edited:
        flags = " (edited)"
    if entry.message.has_attachment:
        flags += " [attachment]"
    return f"[{created}] {sender}: {entry.message.text}{flags}"


# --- Config Commands ---


@app.command
def init():
    """Initialize chatsync configuration.

    Runs an interactive wizard to set up:
    - Store URL and bearer token
    - Your user id
    - Message retention
    """
    if GlobalConfig.exists():
        confirm = input("Configuration already exists. Overwrite? [y/N] ")
        if confirm.lower() != "y":
            print("Cancelled.")
            return

    init_wizard()


@app.command
def config():
    """Show current configuration."""
    cfg = get_config()
    print(f"Config directory: {get_config_dir()}")
    print(f"Store URL: {cfg.url}")
    print(f"Bearer token: {'(set)' if cfg.bearer_token else '(not set)'}")
    print(f"User id: {cfg.user_id or '(not set)'}")
    if cfg.retention_days is None:
        print("Retention: default (30 days)")
    elif cfg.retention_days == 0:
        print("Retention: forever")
    else:
        print(f"Retention: {cfg.retention_days} days")
    if cfg.rbac:
        print(f"Permission overrides: {json.dumps(cfg.rbac)}")


# --- Room Commands ---


@app.command
def rooms(*, json_output: bool = False):
    """List rooms and DM rooms visible to you.

    Args:
        json_output: Output as JSON
    """

    async def run():
        chat = await open_chat(auto_subscribe_rooms=False)
        try:
            public = await chat.rooms.fetch_all()
            return public
        finally:
            await chat.dispose()

    found = asyncio.run(run())
    if json_output:
        print(json.dumps([room.to_document() for room in found], indent=2, default=str))
        return
    if not found:
        print("No rooms")
        return
    for room in found:
        kind = "dm" if room.is_dm else "room"
        print(f"{room.id}  {kind:4}  {room.name}")


@app.command(name="create-room")
def create_room(name: str, *, retention_days: int | None = None):
    """Create a public room.

    Args:
        name: Room name
        retention_days: Per-room retention override
    """

    async def run():
        chat = await open_chat(auto_subscribe_rooms=False)
        try:
            return await chat.create_room(name, retention_days=retention_days)
        finally:
            await chat.dispose()

    room = asyncio.run(run())
    if room is None:
        print("Error: room was not created (see log)", file=sys.stderr)
        raise SystemExit(1)
    print(f"Created room {room.id} ({room.name})")


# --- Message Commands ---


@app.command
def send(room_id: str, text: str):
    """Send a text message to a room.

    Args:
        room_id: Room ID
        text: Message text
    """

    async def run():
        chat = await open_chat(auto_subscribe_rooms=False)
        try:
            room = await chat.rooms.fetch_room(room_id)
            if room is None:
                return None, False
            return room, await chat.create_message(room, text) is not None
        finally:
            await chat.dispose()

    room, sent = asyncio.run(run())
    if room is None:
        print(f"Error: room {room_id} not found", file=sys.stderr)
        raise SystemExit(1)
    if not sent:
        print("Error: send failed (see log)", file=sys.stderr)
        raise SystemExit(1)
    print(f"Sent to {room.name}")


@app.command
def tail(room_id: str, *, retention_days: int | None = None):
    """Print a room's messages as they arrive. Press Ctrl+C to stop.

    Args:
        room_id: Room ID
        retention_days: Only show messages newer than this many days
    """

    async def run():
        chat = await open_chat(auto_subscribe_rooms=False)
        seen: set[str] = set()

        def show(state) -> None:
            for entry in state.messages_by_room.get(room_id, []):
                if entry.id not in seen:
                    seen.add(entry.id)
                    print(format_entry(entry), flush=True)

        try:
            room = await chat.rooms.fetch_room(room_id)
            if room is None:
                print(f"Error: room {room_id} not found", file=sys.stderr)
                return
            chat.on_change(show)
            chat.subscribe_room(room, retention=retention_days)
            show(chat.state)
            while True:
                await asyncio.sleep(3600)
        finally:
            await chat.dispose()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print()


def main():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    app()


if __name__ == "__main__":
    main()
