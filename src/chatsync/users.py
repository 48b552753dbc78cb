"""User directory sync.

Keeps the current user's document and the full roster live in local state.
User documents are only ever changed by merge-and-upsert: read the current
document, shallow-merge the patch, write the whole document back.
"""

from __future__ import annotations

import logging
from typing import Any

from .context import ChatContext
from .errors import RemoteStoreError
from .models import ChatUser, utc_now_iso
from .permissions import PermissionGate, PermissionKey
from .queries import Select, Update, Upsert, by_id
from .state import ChatState
from .store import QueryResult

logger = logging.getLogger(__name__)

USER_KEY = "user"
ALL_USERS_KEY = "all_users"


def _parse_users(result: QueryResult) -> list[ChatUser]:
    """Parse and dedupe a roster result by id; the last occurrence wins."""
    by_id_: dict[str, ChatUser] = {}
    for value in result.values():
        try:
            user = ChatUser.model_validate(value)
        except ValueError:
            logger.warning(f"Skipping malformed user document: {value.get('_id')!r}")
            continue
        by_id_.pop(user.id, None)
        by_id_[user.id] = user
    return list(by_id_.values())


class UserDirectory:
    def __init__(self, ctx: ChatContext, permissions: PermissionGate):
        self._ctx = ctx
        self._permissions = permissions

    @property
    def collection(self) -> str:
        return self._ctx.options.user_collection_key

    # --- Observation ---

    def start(self) -> bool:
        """Observe the current user and the roster. Idempotent.

        Returns False if an observer could not be registered; the failed key is
        released so a later call can retry it.
        """
        if self._ctx.store is None:
            return False
        ok = self._observe(USER_KEY, by_id(self.collection, self._ctx.user_id), self._on_current_user)
        return self._observe(ALL_USERS_KEY, Select(self.collection), self._on_roster) and ok

    def _observe(self, key: str, query: Select, callback) -> bool:
        store = self._ctx.store
        handles = self._ctx.handles
        if not handles.claim(key):
            return True
        try:
            handles.attach(key, store.register_subscription(query))
            handles.attach(key, store.register_observer(query, callback))
        except RemoteStoreError as e:
            logger.error(f"Error observing {key}: {e}")
            handles.release(key)
            return False
        return True

    def _on_current_user(self, result: QueryResult) -> None:
        self._ctx.metrics.increment("observer_firings")
        doc = result.first()
        user = ChatUser.model_validate(doc) if doc else None

        def apply(state: ChatState) -> None:
            state.current_user = user

        self._ctx.state.update(apply)

    def _on_roster(self, result: QueryResult) -> None:
        self._ctx.metrics.increment("observer_firings")
        users = _parse_users(result)
        lookup = {u.id: u for u in users}

        def apply(state: ChatState) -> None:
            state.all_users = users
            state.users_loading = False
            # Authors that were unknown (or renamed) pick up the new roster entry.
            for entries in state.messages_by_room.values():
                for entry in entries:
                    resolved = lookup.get(entry.message.user_id)
                    if resolved is not None:
                        entry.user = resolved

        self._ctx.state.update(apply)

    # --- Reads ---

    def resolve_user(self, user_id: str) -> ChatUser | None:
        """Local roster lookup; no remote call."""
        return self._ctx.snapshot.find_user(user_id)

    async def find_user_by_id(self, user_id: str) -> ChatUser | None:
        if not self._ctx.is_initialized:
            return None
        try:
            result = await self._ctx.execute(by_id(self.collection, user_id))
        except RemoteStoreError as e:
            logger.error(f"Error in find_user_by_id: {e}")
            return None
        doc = result.first()
        return ChatUser.model_validate(doc) if doc else None

    async def current_user_name(self) -> str:
        """Display name of the session user, falling back to the id."""
        user = await self.find_user_by_id(self._ctx.user_id)
        if user is not None and user.name:
            return user.name
        return self._ctx.user_id

    # --- Writes ---

    async def add_user(self, user: ChatUser | dict[str, Any]) -> None:
        if not self._ctx.is_initialized:
            return
        if isinstance(user, dict):
            user = ChatUser.model_validate(user)
        try:
            await self._ctx.execute(Upsert(self.collection, user.to_document()))
        except RemoteStoreError as e:
            logger.error(f"Error in add_user: {e}")

    async def update_user(self, user_id: str | None, **patch: Any) -> ChatUser | None:
        """Read the user, shallow-merge ``patch`` (snake_case field names), upsert.

        Returns the written user, or None if nothing was written.
        """
        if not user_id:
            logger.warning("update_user called without a user id; ignoring")
            return None
        if not self._ctx.is_initialized:
            return None

        current = await self.find_user_by_id(user_id)
        if current is None:
            return None

        merged = ChatUser.model_validate({**current.model_dump(), **patch, "id": user_id})
        try:
            await self._ctx.execute(Upsert(self.collection, merged.to_document()))
        except RemoteStoreError as e:
            logger.error(f"Error in update_user: {e}")
            return None
        return merged

    async def ensure_user(self, user_id: str, name: str | None = None) -> None:
        """Create a directory entry for ``user_id`` unless one already exists."""
        if not user_id or not self._ctx.is_initialized:
            return
        if await self.find_user_by_id(user_id) is not None:
            return
        await self.add_user(ChatUser(id=user_id, name=name or user_id))

    async def add_mention(self, user_id: str, room_id: str, message_id: str) -> None:
        """Append ``message_id`` to a locally known user's pending mentions for a room."""
        user = self.resolve_user(user_id)
        if user is None:
            return
        mentions = {k: list(v) for k, v in user.mentions.items()}
        mentions[room_id] = [*mentions.get(room_id, []), message_id]
        try:
            await self._ctx.execute(Update(self.collection, user.id, {"mentions": mentions}))
        except RemoteStoreError as e:
            logger.error(f"Error updating mentions for {user_id}: {e}")

    async def mark_room_as_read(self, room_id: str) -> None:
        """Bump the last-read time of a subscribed room and clear its mentions."""
        if not self._ctx.is_initialized:
            return
        user = await self.find_user_by_id(self._ctx.user_id)
        if user is None or not user.is_subscribed_to(room_id):
            return
        subscriptions = {**user.subscriptions, room_id: utc_now_iso()}
        mentions = {k: v for k, v in user.mentions.items() if k != room_id}
        await self.update_user(user.id, subscriptions=subscriptions, mentions=mentions)

    async def subscribe_to_room(self, room_id: str) -> None:
        if not self._ctx.is_initialized:
            return
        user = await self.find_user_by_id(self._ctx.user_id)
        if user is None or user.is_subscribed_to(room_id):
            return
        await self.update_user(user.id, subscriptions={**user.subscriptions, room_id: utc_now_iso()})

    async def unsubscribe_from_room(self, room_id: str) -> None:
        """Forget the room entirely (absent key = never subscribed)."""
        if not self._ctx.is_initialized:
            return
        user = await self.find_user_by_id(self._ctx.user_id)
        if user is None or room_id not in user.subscriptions:
            return
        subscriptions = {k: v for k, v in user.subscriptions.items() if k != room_id}
        await self.update_user(user.id, subscriptions=subscriptions)

    async def toggle_room_subscription(self, room_id: str) -> None:
        if not self._permissions.check(PermissionKey.SUBSCRIBE_TO_ROOM, "toggle_room_subscription"):
            return
        if not self._ctx.is_initialized:
            return
        user = await self.find_user_by_id(self._ctx.user_id)
        if user is None:
            return
        value = None if user.is_subscribed_to(room_id) else utc_now_iso()
        await self.update_user(user.id, subscriptions={**user.subscriptions, room_id: value})
