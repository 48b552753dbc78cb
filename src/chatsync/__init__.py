"""chatsync - Reactive chat state synchronized with a remote document store.

Usage:
    from chatsync import Chat, ChatOptions

    # In-memory store (tests, demos)
    chat = Chat.in_memory(user_id="alice")

    # Remote store over HTTP
    chat = Chat.remote(url="https://store.example.com", user_id="alice")

    # Full workflow
    room = await chat.create_room("General")
    chat.subscribe_room(room, retention=7)
    await chat.create_message(room, "Hello!")
    for entry in chat.state.messages_by_room[room.id]:
        print(entry.user.name if entry.user else "?", entry.message.text)

    chat.logout()
"""

from chatsync._version import __version__
from chatsync.client import Chat
from chatsync.errors import (
    AttachmentError,
    AttachmentFetchError,
    AttachmentUploadError,
    ChatError,
    FetchFailure,
    ImageProcessingError,
    MalformedInputError,
    MissingUserError,
    NotInitializedError,
    RemoteStoreError,
    RoomNotFoundError,
)
from chatsync.memory import InMemoryRemoteStore
from chatsync.models import ChatUser, Mention, Message, MessageWithUser, Reaction, RetentionConfig, Room
from chatsync.options import ChatConfigError, ChatOptions
from chatsync.permissions import PermissionKey
from chatsync.remote import HttpRemoteStore
from chatsync.store import RemoteStore

__all__ = [
    "__version__",
    "Chat",
    "ChatOptions",
    "ChatConfigError",
    "RemoteStore",
    "InMemoryRemoteStore",
    "HttpRemoteStore",
    "ChatUser",
    "Room",
    "Message",
    "MessageWithUser",
    "Reaction",
    "Mention",
    "RetentionConfig",
    "PermissionKey",
    "ChatError",
    "RemoteStoreError",
    "NotInitializedError",
    "MissingUserError",
    "RoomNotFoundError",
    "AttachmentError",
    "ImageProcessingError",
    "MalformedInputError",
    "AttachmentUploadError",
    "AttachmentFetchError",
    "FetchFailure",
]
