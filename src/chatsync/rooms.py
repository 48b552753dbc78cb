"""Room registry.

Observes the public ``rooms`` collection and the ``dm_rooms`` the session
user participates in. Each firing replaces the rooms of that collection class
wholesale.
"""

from __future__ import annotations

import logging

from uuid_extensions import uuid7 as make_uuid7

from .context import ChatContext
from .errors import RemoteStoreError
from .messages import MessageSync
from .models import (
    DM_MESSAGES_COLLECTION,
    DM_ROOMS_COLLECTION,
    MESSAGES_COLLECTION,
    ROOMS_COLLECTION,
    ChatUser,
    Room,
    utc_now_iso,
)
from .permissions import PermissionGate, PermissionKey
from .queries import Contains, Select, Upsert, by_id
from .state import ChatState
from .store import QueryResult
from .users import UserDirectory

logger = logging.getLogger(__name__)

_DEFAULT_MESSAGES_ID = {
    ROOMS_COLLECTION: MESSAGES_COLLECTION,
    DM_ROOMS_COLLECTION: DM_MESSAGES_COLLECTION,
}


def _parse_rooms(collection_id: str, result: QueryResult) -> list[Room]:
    rooms = []
    for value in result.values():
        doc = dict(value)
        doc.setdefault("collectionId", collection_id)
        doc.setdefault("messagesId", _DEFAULT_MESSAGES_ID[collection_id])
        try:
            rooms.append(Room.model_validate(doc))
        except ValueError:
            logger.warning(f"Skipping malformed room document: {value.get('_id')!r}")
    return rooms


class RoomRegistry:
    def __init__(
        self,
        ctx: ChatContext,
        permissions: PermissionGate,
        users: UserDirectory,
        messages: MessageSync,
    ):
        self._ctx = ctx
        self._permissions = permissions
        self._users = users
        self._messages = messages

    # --- Observation ---

    def rooms_query(self) -> Select:
        return Select(ROOMS_COLLECTION)

    def dm_rooms_query(self) -> Select:
        return Select(
            DM_ROOMS_COLLECTION,
            where=(Contains("participants", "userId", self._ctx.user_id),),
        )

    def start(self) -> bool:
        """Observe rooms and DM rooms. Returns False if either observer failed to register."""
        store = self._ctx.store
        if store is None:
            return False
        handles = self._ctx.handles
        ok = True
        for key, query in (
            (ROOMS_COLLECTION, self.rooms_query()),
            (DM_ROOMS_COLLECTION, self.dm_rooms_query()),
        ):
            if not handles.claim(key):
                continue
            try:
                handles.attach(key, store.register_subscription(query))
                handles.attach(
                    key,
                    store.register_observer(query, lambda result, c=key: self._on_rooms(c, result)),
                )
            except RemoteStoreError as e:
                logger.error(f"Error observing {key}: {e}")
                handles.release(key)
                ok = False
        return ok

    def _on_rooms(self, collection_id: str, result: QueryResult) -> None:
        self._ctx.metrics.increment("observer_firings")
        rooms = _parse_rooms(collection_id, result)

        def apply(state: ChatState) -> None:
            if collection_id == DM_ROOMS_COLLECTION:
                state.dm_rooms = rooms
            else:
                state.rooms = rooms
            state.rooms_loading = False

        self._ctx.state.update(apply)

        if self._ctx.options.auto_subscribe_rooms:
            for room in rooms:
                self._messages.subscribe_room(room)

    # --- Selectors ---

    def public_rooms(self) -> list[Room]:
        return list(self._ctx.snapshot.rooms)

    def dm_rooms(self) -> list[Room]:
        return list(self._ctx.snapshot.dm_rooms)

    def find_room(self, room_id: str) -> Room | None:
        return self._ctx.snapshot.find_room(room_id)

    # --- Reads ---

    async def get_room_details(self, room: Room) -> Room | None:
        """Re-read a room document; the caller's copy may be stale."""
        if not self._ctx.is_initialized:
            return None
        collection_id = room.collection_id or ROOMS_COLLECTION
        try:
            result = await self._ctx.execute(by_id(collection_id, room.id))
        except RemoteStoreError as e:
            logger.error(f"Error reading room {room.id}: {e}")
            return None
        rooms = _parse_rooms(collection_id, result)
        return rooms[0] if rooms else None

    async def fetch_room(self, room_id: str) -> Room | None:
        """Look a room up by id, in local state first, then in both room collections."""
        room = self.find_room(room_id)
        if room is not None or not self._ctx.is_initialized:
            return room
        for collection_id in (ROOMS_COLLECTION, DM_ROOMS_COLLECTION):
            found = await self.get_room_details(Room(id=room_id, collection_id=collection_id))
            if found is not None:
                return found
        return None

    async def fetch_all(self) -> list[Room]:
        """One-shot read of public rooms plus the DM rooms the user is in."""
        if not self._ctx.is_initialized:
            return []
        rooms: list[Room] = []
        for collection_id, query in (
            (ROOMS_COLLECTION, self.rooms_query()),
            (DM_ROOMS_COLLECTION, self.dm_rooms_query()),
        ):
            try:
                result = await self._ctx.execute(query)
            except RemoteStoreError as e:
                logger.error(f"Error listing {collection_id}: {e}")
                continue
            rooms.extend(_parse_rooms(collection_id, result))
        return rooms

    # --- Writes ---

    async def _create(self, room: Room) -> Room | None:
        try:
            await self._ctx.execute(Upsert(room.collection_id, room.to_document()))
        except RemoteStoreError as e:
            logger.error(f"Error creating {room.collection_id} room: {e}")
            return None
        logger.info(f"Created room {room.id} ({room.name!r})")
        return room

    async def create_room(
        self,
        name: str,
        retention_days: int | None = None,
        is_generated: bool = False,
        room_id: str | None = None,
    ) -> Room | None:
        """Upsert a public room. Creating twice with the same id yields one room."""
        if not self._permissions.check(PermissionKey.CREATE_ROOM, "create_room"):
            return None
        if not self._ctx.is_initialized:
            return None
        if not name:
            logger.warning("create_room called without a name; ignoring")
            return None

        room = Room(
            id=room_id or str(make_uuid7()),
            name=name,
            messages_id=MESSAGES_COLLECTION,
            collection_id=ROOMS_COLLECTION,
            created_by=self._ctx.user_id,
            created_on=utc_now_iso(),
            is_generated=is_generated,
            retention_days=retention_days,
        )
        return await self._create(room)

    async def create_generated_room(self, room_id: str, name: str) -> Room | None:
        return await self.create_room(name, is_generated=True, room_id=room_id)

    async def create_dm_room(self, other_user: ChatUser) -> Room | None:
        """Create a DM room. Participants are [current user, other user], in that order."""
        if not self._permissions.check(PermissionKey.CREATE_ROOM, "create_dm_room"):
            return None
        if not self._ctx.is_initialized:
            return None
        me = self._ctx.user_id
        if not me or not other_user.id:
            logger.warning("create_dm_room requires both user ids; ignoring")
            return None

        my_name = await self._users.current_user_name()
        room = Room(
            id=str(make_uuid7()),
            name=f"{my_name} & {other_user.name or other_user.id}",
            messages_id=DM_MESSAGES_COLLECTION,
            collection_id=DM_ROOMS_COLLECTION,
            created_by=me,
            created_on=utc_now_iso(),
            participants=[me, other_user.id],
        )
        return await self._create(room)
