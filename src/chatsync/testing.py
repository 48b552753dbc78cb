"""Pytest fixtures for testing with chatsync.

Usage in conftest.py:
    pytest_plugins = ["chatsync.testing"]

Or import specific fixtures:
    from chatsync.testing import chat, chat_with_room

Available fixtures:
    - remote_store: Fresh InMemoryRemoteStore
    - chat: Started in-memory Chat for "test-user", with a user document
    - chat_with_room: chat plus a "General" room
    - make_chat: Factory for more clients on the same store (simulated peers)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Generator

import pytest
from uuid_extensions import uuid7 as make_uuid7

from .client import Chat
from .memory import InMemoryRemoteStore
from .models import ROOMS_COLLECTION, ChatUser, Room, format_timestamp, utc_now

TEST_USER_ID = "test-user"
TEST_USER_NAME = "Test User"


def seed_user(store: InMemoryRemoteStore, user_id: str, name: str, collection: str = "users") -> ChatUser:
    user = ChatUser(id=user_id, name=name)
    store.insert_raw(collection, user.to_document())
    return user


def seed_room(store: InMemoryRemoteStore, name: str, room_id: str | None = None, created_by: str = TEST_USER_ID) -> Room:
    room = Room(
        id=room_id or str(make_uuid7()),
        name=name,
        created_by=created_by,
        created_on=format_timestamp(utc_now()),
    )
    store.insert_raw(ROOMS_COLLECTION, room.to_document())
    return room


def make_message_doc(
    room: Room,
    text: str,
    user_id: str = TEST_USER_ID,
    created_on: datetime | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """A current-schema message document, as another client would write it."""
    doc = {
        "_id": str(make_uuid7()),
        "roomId": room.id,
        "text": text,
        "userId": user_id,
        "createdOn": format_timestamp(created_on or utc_now()),
        "isArchived": False,
        "reactions": [],
        "mentions": [],
    }
    doc.update(extra)
    return doc


def seed_messages(
    store: InMemoryRemoteStore,
    room: Room,
    count: int = 5,
    user_id: str = TEST_USER_ID,
    text_prefix: str = "Message",
    age: timedelta = timedelta(minutes=5),
) -> list[dict[str, Any]]:
    """Write ``count`` messages into the room's collection, oldest first.

    The newest message is ``age`` old; each earlier one is a second older.

    Returns:
        List of the written documents
    """
    now = utc_now()
    docs = []
    for i in range(count):
        created = now - age - timedelta(seconds=count - i)
        doc = make_message_doc(room, f"{text_prefix} {i + 1}", user_id=user_id, created_on=created)
        store.insert_raw(room.messages_id, doc)
        docs.append(doc)
    return docs


@pytest.fixture
def remote_store() -> InMemoryRemoteStore:
    """Fresh in-memory store. No cleanup needed."""
    return InMemoryRemoteStore()


@pytest.fixture
def chat(remote_store: InMemoryRemoteStore) -> Generator[Chat, None, None]:
    """Started in-memory Chat for "test-user".

    Example:
        @pytest.mark.asyncio
        async def test_something(chat):
            room = await chat.create_room("Lobby")
            await chat.create_message(room, "hi")
    """
    seed_user(remote_store, TEST_USER_ID, TEST_USER_NAME)
    client = Chat.in_memory(user_id=TEST_USER_ID, store=remote_store, consistency_check_delay=None)
    yield client
    client.logout()


@pytest.fixture
def chat_with_room(chat: Chat, remote_store: InMemoryRemoteStore) -> Generator[tuple[Chat, Room], None, None]:
    """Chat with a pre-created "General" room.

    Returns:
        Tuple of (chat, room)
    """
    room = seed_room(remote_store, "General")
    yield chat, room


@pytest.fixture
def make_chat(remote_store: InMemoryRemoteStore) -> Generator[Callable[..., Chat], None, None]:
    """Factory for extra clients sharing the test store.

    Example:
        def test_two_peers(chat, make_chat):
            bob = make_chat("bob", name="Bob")
    """
    created: list[Chat] = []

    def factory(user_id: str, name: str | None = None, **kwargs: Any) -> Chat:
        seed_user(remote_store, user_id, name or user_id)
        kwargs.setdefault("consistency_check_delay", None)
        client = Chat.in_memory(user_id=user_id, store=remote_store, **kwargs)
        created.append(client)
        return client

    yield factory
    for client in created:
        client.logout()
