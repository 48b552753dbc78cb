"""Chat client facade.

This module provides the `Chat` class that applications interact with. It
owns one ChatContext and wires every sync component to it.

Usage:
    # In-memory store (tests, demos)
    chat = Chat.in_memory(user_id="alice")

    # Remote store over HTTP (needs a running event loop for observers)
    chat = Chat.remote(url="https://store.example.com", user_id="alice")

    # With explicit options
    chat = await Chat.create(ChatOptions(url=..., user_id="alice"))

    room = await chat.create_room("General")
    await chat.create_message(room, "hello")
    chat.state.messages_by_room[room.id]

    await chat.dispose()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from .attachments import AttachmentPipeline, AttachmentSource, CompleteCallback, ProgressCallback
from .context import ChatContext
from .memory import InMemoryRemoteStore
from .messages import MessageSync
from .models import AttachmentToken, ChatUser, Mention, Message, MessageWithUser, Reaction, RetentionConfig, Room
from .mutations import MessageKind, MutationEngine
from .options import ChatOptions, NotificationHandler
from .permissions import PermissionGate, PermissionKey
from .remote import HttpRemoteStore
from .rooms import RoomRegistry
from .state import ChatState
from .store import Handle, RemoteStore
from .users import UserDirectory

logger = logging.getLogger(__name__)


class Chat:
    """Reactive chat client over a remote document store.

    State is read from ``chat.state``; every change goes through the
    methods below. Each Chat owns its context: nothing is shared between
    instances unless the caller passes the same store to both.

    Examples:
        chat = Chat.in_memory(user_id="alice")
        room = await chat.create_room("General")
        chat.subscribe_room(room, retention=7)
    """

    def __init__(self, options: ChatOptions, store: RemoteStore | None = None):
        """Initialize the client without starting any observers.

        Args:
            options: Configuration options.
            store: Store adapter to use instead of the one options describe.
        """
        self._options = options
        self._ctx = ChatContext(options=options, store=store if store is not None else self._create_store())
        self._started = False

        self.permissions = PermissionGate(self._ctx.state)
        self.permissions.update_rbac_config(options.rbac_config)
        self.users = UserDirectory(self._ctx, self.permissions)
        self.messages = MessageSync(self._ctx, self.users, options.notification_handler)
        self.rooms = RoomRegistry(self._ctx, self.permissions, self.users, self.messages)
        self.attachments = AttachmentPipeline(self._ctx)
        self.mutations = MutationEngine(self._ctx, self.permissions, self.users, self.rooms, self.attachments)

    def _create_store(self) -> RemoteStore | None:
        opts = self._options
        if opts.is_in_memory():
            return InMemoryRemoteStore()
        if opts.is_remote():
            assert opts.url is not None
            return HttpRemoteStore(
                url=opts.url,
                bearer_token=opts.bearer_token,
                poll_interval=opts.poll_interval,
            )
        logger.warning("No store configured; chat operations will be no-ops")
        return None

    # --- Factory Methods ---

    @classmethod
    async def create(cls, options: ChatOptions, store: RemoteStore | None = None) -> "Chat":
        """Create a client and start observing users and rooms."""
        chat = cls(options, store)
        chat.start()
        return chat

    @classmethod
    def in_memory(cls, user_id: str, store: InMemoryRemoteStore | None = None, **kwargs: Any) -> "Chat":
        """Create a started client on an ephemeral in-memory store.

        Pass the same ``store`` to several clients to simulate peers.
        """
        chat = cls(ChatOptions.for_in_memory(user_id, **kwargs), store)
        chat.start()
        return chat

    @classmethod
    def remote(cls, url: str, user_id: str, bearer_token: str | None = None, **kwargs: Any) -> "Chat":
        """Create a started client against a remote store. Requires a running event loop."""
        chat = cls(ChatOptions.for_remote(url, user_id, bearer_token, **kwargs))
        chat.start()
        return chat

    # --- Lifecycle ---

    def start(self) -> None:
        """Observe the current user, the roster, and rooms. Idempotent.

        If an observer cannot be registered the client stays unstarted and a
        later call retries the missing observers.
        """
        if self._started or self._ctx.store is None:
            return
        users_ok = self.users.start()
        rooms_ok = self.rooms.start()
        self._started = users_ok and rooms_ok

    def logout(self, purge: bool = False) -> int:
        """Cancel every subscription and observer. Safe to call repeatedly.

        Local content is kept unless ``purge`` is set.

        Returns:
            Number of handles cancelled by this call.
        """
        cancelled = self._ctx.handles.cancel_all()
        self._started = False
        if purge:
            self._ctx.state.reset()
        return cancelled

    async def settle(self) -> None:
        """Wait for pending background work (legacy write-backs, consistency checks)."""
        await self._ctx.tasks.drain()

    async def dispose(self) -> None:
        """Log out, stop background work, and close the store."""
        self.logout()
        self._ctx.tasks.cancel_all()
        await self._ctx.tasks.drain()
        if self._ctx.store is not None:
            await self._ctx.store.aclose()

    async def __aenter__(self) -> "Chat":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.dispose()

    # --- Properties ---

    @property
    def state(self) -> ChatState:
        return self._ctx.snapshot

    @property
    def context(self) -> ChatContext:
        return self._ctx

    @property
    def store(self) -> RemoteStore | None:
        return self._ctx.store

    @property
    def options(self) -> ChatOptions:
        return self._options

    @property
    def user_id(self) -> str:
        return self._ctx.user_id

    @property
    def handles(self) -> list[Handle]:
        return self._ctx.handles.all_handles()

    def metrics(self) -> dict:
        return self._ctx.metrics.to_dict()

    def on_change(self, listener) -> Any:
        """Register a state listener; returns a function that removes it."""
        return self._ctx.state.subscribe(listener)

    # --- Users ---

    async def add_user(self, user: ChatUser | dict[str, Any]) -> None:
        await self.users.add_user(user)

    async def update_user(self, user_id: str | None, **patch: Any) -> ChatUser | None:
        return await self.users.update_user(user_id, **patch)

    async def find_user_by_id(self, user_id: str) -> ChatUser | None:
        return await self.users.find_user_by_id(user_id)

    def resolve_user(self, user_id: str) -> ChatUser | None:
        return self.users.resolve_user(user_id)

    async def mark_room_as_read(self, room_id: str) -> None:
        await self.users.mark_room_as_read(room_id)

    async def toggle_room_subscription(self, room_id: str) -> None:
        await self.users.toggle_room_subscription(room_id)

    async def subscribe_to_room(self, room_id: str) -> None:
        await self.users.subscribe_to_room(room_id)

    async def unsubscribe_from_room(self, room_id: str) -> None:
        await self.users.unsubscribe_from_room(room_id)

    # --- Rooms ---

    async def create_room(
        self,
        name: str,
        retention_days: int | None = None,
        is_generated: bool = False,
        room_id: str | None = None,
    ) -> Room | None:
        return await self.rooms.create_room(name, retention_days, is_generated, room_id)

    async def create_dm_room(self, other_user: ChatUser) -> Room | None:
        return await self.rooms.create_dm_room(other_user)

    async def create_generated_room(self, room_id: str, name: str) -> Room | None:
        return await self.rooms.create_generated_room(room_id, name)

    async def get_room_details(self, room: Room) -> Room | None:
        return await self.rooms.get_room_details(room)

    def public_rooms(self) -> list[Room]:
        return self.rooms.public_rooms()

    def dm_rooms(self) -> list[Room]:
        return self.rooms.dm_rooms()

    # --- Messages ---

    def subscribe_room(self, room: Room, retention: int | RetentionConfig | None = None) -> bool:
        return self.messages.subscribe_room(room, retention)

    def subscribe_room_messages(
        self,
        room_id: str,
        messages_id: str,
        retention: int | RetentionConfig | None = None,
    ) -> bool:
        return self.messages.subscribe_room_messages(room_id, messages_id, retention)

    def unsubscribe_room(self, room_id: str) -> None:
        self.messages.unsubscribe_room(room_id)

    def fetch_single_message(self, message_id: str, collection_id: str) -> bool:
        return self.messages.fetch_single_message(message_id, collection_id)

    def messages_for(self, room_id: str) -> list[MessageWithUser]:
        return self.messages.messages_for(room_id)

    def set_active_room(self, room_id: str | None) -> None:
        self.messages.set_active_room(room_id)

    def register_notification_handler(self, handler: NotificationHandler | None) -> None:
        self.messages.register_notification_handler(handler)

    # --- Mutations ---

    async def create_message(
        self,
        room: Room,
        text: str,
        mentions: list[Mention | dict[str, Any]] | None = None,
    ) -> Message | None:
        return await self.mutations.create_message(room, text, mentions)

    async def save_edited_text_message(self, message: Message, room: Room) -> Message | None:
        return await self.mutations.save_edited_text_message(message, room)

    async def save_deleted_message(self, message: Message, room: Room, kind: MessageKind = "text") -> Message | None:
        return await self.mutations.save_deleted_message(message, room, kind)

    async def update_message_reactions(self, message: Message, room: Room, reactions: list[Reaction]) -> bool:
        return await self.mutations.update_message_reactions(message, room, reactions)

    async def add_reaction_to_message(self, message: Message, room: Room, reaction: Reaction | dict[str, Any]) -> bool:
        return await self.mutations.add_reaction_to_message(message, room, reaction)

    async def remove_reaction_from_message(
        self, message: Message, room: Room, reaction: Reaction | dict[str, Any]
    ) -> bool:
        return await self.mutations.remove_reaction_from_message(message, room, reaction)

    async def create_image_message(
        self, room: Room, source: AttachmentSource | bytes | str | Path, text: str | None = None
    ) -> Message:
        return await self.mutations.create_image_message(room, source, text)

    async def create_file_message(
        self, room: Room, source: AttachmentSource | bytes | str | Path, text: str | None = None
    ) -> Message:
        return await self.mutations.create_file_message(room, source, text)

    def fetch_attachment(
        self,
        token: AttachmentToken | None,
        on_progress: ProgressCallback,
        on_complete: CompleteCallback,
    ) -> Handle | None:
        return self.attachments.fetch_attachment(token, on_progress, on_complete)

    # --- Permissions ---

    def can_perform_action(self, key: PermissionKey | str) -> bool:
        return self.permissions.can_perform_action(key)

    def update_rbac_config(self, patch: Mapping[PermissionKey | str, bool]) -> None:
        self.permissions.update_rbac_config(patch)
