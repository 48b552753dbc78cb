"""Retention-bounded message sync.

Each room gets exactly one subscription + observer pair, scoped to the room's
retention window. Every observer firing is merged into the room's message
list in a single state update:

    - legacy documents are normalized first
    - archived documents are skipped
    - documents older than the cutoff are skipped
    - a document whose ``archivedMessage`` names a listed entry replaces it
    - a document whose id is already listed replaces that entry
    - anything else is appended

A firing never removes entries, and no id appears twice in a room's list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .context import ChatContext
from .errors import RemoteStoreError
from .legacy import NormalizedMessage, normalize_message
from .lifecycle import message_key, room_key
from .models import (
    DM_MESSAGES_COLLECTION,
    DM_ROOMS_COLLECTION,
    ROOMS_COLLECTION,
    Message,
    MessageWithUser,
    RetentionConfig,
    Room,
    format_timestamp,
    resolve_retention,
    to_epoch_ms,
    utc_now,
)
from .queries import ATTACHMENT_FIELDS, AnyOf, Eq, Gte, Select, Upsert, by_id
from .state import ChatState
from .store import QueryResult
from .users import UserDirectory

logger = logging.getLogger(__name__)

MESSAGE_RECENCY_THRESHOLD = timedelta(seconds=10)
PREVIEW_LENGTH = 30


def retention_cutoff(retention: RetentionConfig, now: datetime | None = None) -> datetime | None:
    """Oldest creation time still synchronized, or None for no bound."""
    days = retention.effective_days
    if days is None:
        return None
    return (now or utc_now()) - timedelta(days=days)


def room_messages_query(room_id: str, messages_id: str, cutoff: datetime | None) -> Select:
    where: list = [Eq("roomId", "roomId", room_id)]
    if cutoff is not None:
        cutoff_ms = to_epoch_ms(cutoff)
        where.append(
            AnyOf(
                (
                    Gte("createdOn", "date", format_timestamp(cutoff)),
                    Gte("timeMs", "dateMs", cutoff_ms),
                    Gte("b", "dateMs", cutoff_ms),
                )
            )
        )
    return Select(
        messages_id,
        where=tuple(where),
        order_by="createdOn",
        attachment_fields=ATTACHMENT_FIELDS,
    )


def _index_of(entries: list[MessageWithUser], message_id: str | None) -> int | None:
    if message_id is None:
        return None
    for i, entry in enumerate(entries):
        if entry.id == message_id:
            return i
    return None


def upsert_entry(entries: list[MessageWithUser], entry: MessageWithUser) -> bool:
    """Place ``entry`` in ``entries``. Returns True if it was appended (new)."""
    existing = _index_of(entries, entry.id)
    original = _index_of(entries, entry.message.archived_message)

    target = original if original is not None else existing
    if target is None:
        entries.append(entry)
        return True

    entries[target] = entry
    if existing is not None and existing != target:
        del entries[existing]
    return False


@dataclass
class _Merged:
    entry: MessageWithUser
    appended: bool


class MessageSync:
    def __init__(
        self,
        ctx: ChatContext,
        users: UserDirectory,
        notification_handler: Callable[[str, str], None] | None = None,
    ):
        self._ctx = ctx
        self._users = users
        self._notification_handler = notification_handler
        self._write_backs: set[str] = set()

    # --- Selectors ---

    def messages_for(self, room_id: str) -> list[MessageWithUser]:
        return list(self._ctx.snapshot.messages_by_room.get(room_id, []))

    def is_subscribed(self, room_id: str) -> bool:
        return room_key(room_id) in self._ctx.handles

    def register_notification_handler(self, handler: Callable[[str, str], None] | None) -> None:
        """Replace the handler called with (title, preview) for new messages. None disables it."""
        self._notification_handler = handler

    def set_active_room(self, room_id: str | None) -> None:
        def apply(state: ChatState) -> None:
            state.active_room_id = room_id

        self._ctx.state.update(apply)

    # --- Room subscriptions ---

    def subscribe_room(self, room: Room, retention: int | RetentionConfig | None = None) -> bool:
        """Open the room's message subscription and observer.

        A second call for the same room is a no-op, even with a different
        retention. Returns True if this call opened the subscription.
        """
        store = self._ctx.store
        if store is None:
            return False

        key = room_key(room.id)
        if not self._ctx.handles.claim(key):
            return False

        resolved = resolve_retention(retention, room, self._ctx.options.retention)
        cutoff = retention_cutoff(resolved)
        query = room_messages_query(room.id, room.messages_id, cutoff)

        try:
            self._ctx.handles.attach(key, store.register_subscription(query))
            self._ctx.handles.attach(
                key,
                store.register_observer(query, lambda result: self._merge_room(room, cutoff, result)),
            )
        except RemoteStoreError as e:
            logger.error(f"Error subscribing to room {room.id}: {e}")
            self._ctx.handles.release(key)
            return False

        logger.debug(f"Subscribed to room {room.id} (retention: {resolved.effective_days} days)")
        return True

    def subscribe_room_messages(
        self,
        room_id: str,
        messages_id: str,
        retention: int | RetentionConfig | None = None,
    ) -> bool:
        """subscribe_room for a room known only by its ids."""
        room = self._ctx.snapshot.find_room(room_id)
        if room is None:
            collection_id = DM_ROOMS_COLLECTION if messages_id == DM_MESSAGES_COLLECTION else ROOMS_COLLECTION
            room = Room(id=room_id, messages_id=messages_id, collection_id=collection_id)
        return self.subscribe_room(room, retention)

    def unsubscribe_room(self, room_id: str) -> None:
        self._ctx.handles.release(room_key(room_id))

        def drop(state: ChatState) -> None:
            state.messages_by_room.pop(room_id, None)

        self._ctx.state.update(drop)

    # --- Single messages ---

    def fetch_single_message(self, message_id: str, collection_id: str) -> bool:
        """Watch one message outside its room's bulk feed (e.g. a deep link)."""
        store = self._ctx.store
        if store is None:
            return False

        key = message_key(collection_id, message_id)
        if not self._ctx.handles.claim(key):
            return False

        query = by_id(collection_id, message_id, ATTACHMENT_FIELDS)
        try:
            self._ctx.handles.attach(key, store.register_subscription(query))
            self._ctx.handles.attach(
                key,
                store.register_observer(query, lambda result: self._merge_single(collection_id, result)),
            )
        except RemoteStoreError as e:
            logger.error(f"Error watching message {message_id}: {e}")
            self._ctx.handles.release(key)
            return False
        return True

    # --- Merging ---

    def _normalize(self, values: list[dict]) -> list[NormalizedMessage]:
        normalized = []
        for value in values:
            try:
                normalized.append(normalize_message(value))
            except ValueError:
                logger.warning(f"Skipping malformed message document: {value.get('_id')!r}")
        return normalized

    def _merge_room(self, room: Room, cutoff: datetime | None, result: QueryResult) -> None:
        self._ctx.metrics.increment("observer_firings")
        incoming = []
        for item in self._normalize(result.values()):
            message = item.message
            if message.is_archived:
                continue
            created = message.created_at
            if cutoff is not None and created is not None and created < cutoff:
                continue
            if not message.room_id:
                message.room_id = room.id
            incoming.append(item)
            self._schedule_write_back(room.messages_id, item)

        def apply(state: ChatState) -> list[_Merged]:
            entries = state.messages_by_room.setdefault(room.id, [])
            merged = []
            for item in incoming:
                entry = MessageWithUser(item.message, state.find_user(item.message.user_id))
                merged.append(_Merged(entry, upsert_entry(entries, entry)))
            return merged

        merged = self._ctx.state.update(apply)
        appended = sum(1 for m in merged if m.appended)
        self._ctx.metrics.increment("messages_merged", appended)
        self._ctx.metrics.increment("messages_refreshed", len(merged) - appended)

        for m in merged:
            if m.appended and m.entry.message.archived_message is None:
                self._maybe_notify(room, m.entry)

    def _merge_single(self, collection_id: str, result: QueryResult) -> None:
        self._ctx.metrics.increment("observer_firings")
        doc = result.first()
        if doc is None:
            return
        items = self._normalize([doc])
        if not items:
            return
        item = items[0]
        room_id = item.message.room_id
        if not room_id:
            logger.warning(f"Message {item.message.id} has no room id; not merged")
            return
        self._schedule_write_back(collection_id, item)

        def apply(state: ChatState) -> bool:
            entries = state.messages_by_room.setdefault(room_id, [])
            existing = _index_of(entries, item.message.id)
            entry = MessageWithUser(item.message, state.find_user(item.message.user_id))
            if existing is None:
                entries.append(entry)
                return True
            entries[existing] = entry
            return False

        if self._ctx.state.update(apply):
            self._ctx.metrics.increment("messages_merged")
        else:
            self._ctx.metrics.increment("messages_refreshed")

    # --- Legacy write-back ---

    def _schedule_write_back(self, collection_id: str, item: NormalizedMessage) -> None:
        if not item.needs_write_back or item.message.id in self._write_backs:
            return
        self._write_backs.add(item.message.id)
        self._ctx.tasks.spawn(
            self._write_back(collection_id, item),
            name=f"legacy-write-back:{item.message.id}",
        )

    async def _write_back(self, collection_id: str, item: NormalizedMessage) -> None:
        message = item.message
        if message.user_id:
            await self._users.ensure_user(message.user_id, item.author_name)
        try:
            await self._ctx.execute(Upsert(collection_id, message.to_document(), ATTACHMENT_FIELDS))
        except RemoteStoreError as e:
            logger.error(f"Error writing back converted message {message.id}: {e}")
            self._write_backs.discard(message.id)

    # --- Notifications ---

    def should_notify(self, room: Room, message: Message, now: datetime | None = None) -> bool:
        state = self._ctx.snapshot
        user = state.current_user
        me = user.id if user is not None else self._ctx.user_id

        if message.user_id == me:
            return False
        created = message.created_at
        if created is None or created <= (now or utc_now()) - MESSAGE_RECENCY_THRESHOLD:
            return False
        subscribed = user is not None and user.is_subscribed_to(room.id)
        mentioned = any(m.user_id == me for m in message.mentions)
        if not (subscribed or room.is_dm or mentioned):
            return False
        return state.active_room_id != room.id

    def _maybe_notify(self, room: Room, entry: MessageWithUser) -> None:
        if self._notification_handler is None:
            return
        if not self.should_notify(room, entry.message):
            return
        title, preview = notification_text(room, entry)
        try:
            self._notification_handler(title, preview)
        except Exception:
            logger.warning("Notification handler failed", exc_info=True)


def notification_text(room: Room, entry: MessageWithUser) -> tuple[str, str]:
    sender = entry.user.name if entry.user is not None and entry.user.name else "Unknown User"
    title = f"New message from {sender}" if room.is_dm else f"#{room.name}: {sender}"

    text = entry.message.text
    if text:
        preview = text[:PREVIEW_LENGTH] + ("..." if len(text) > PREVIEW_LENGTH else "")
    else:
        preview = "Sent an attachment"
    return title, preview
