"""Optimistic mutation engine.

Every write goes through here and is tracked as a Mutation:

    REQUESTED -> LOCAL_APPLIED -> CONFIRMED | ROLLED_BACK

Message creation has no optimistic phase: the id is generated client-side
before the write, so the store's own observer firing delivers the message
and the merge recognizes it. Reactions are applied locally first and rolled
back if the remote update fails.

Edits and deletes are archive-and-replace: the original document is marked
``isArchived`` in place and a new document, whose ``archivedMessage`` points
at the original id, becomes the visible message.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from uuid_extensions import uuid7 as make_uuid7

from .attachments import AttachmentPipeline, AttachmentSource, attachment_metadata, make_thumbnail
from .context import ChatContext
from .errors import (
    AttachmentUploadError,
    ChatError,
    MalformedInputError,
    MissingUserError,
    NotInitializedError,
    RemoteStoreError,
    RoomNotFoundError,
)
from .models import Mention, Message, Reaction, Room, utc_now, utc_now_iso
from .permissions import PermissionGate, PermissionKey
from .queries import ATTACHMENT_FIELDS, Update, Upsert, by_id
from .rooms import RoomRegistry
from .state import ChatState
from .users import UserDirectory

logger = logging.getLogger(__name__)

DELETED_PLACEHOLDERS = {
    "text": "[deleted message]",
    "image": "[deleted image]",
    "file": "[deleted file]",
}

MessageKind = Literal["text", "image", "file"]


class MutationState(str, Enum):
    REQUESTED = "requested"
    LOCAL_APPLIED = "local_applied"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Mutation:
    kind: str
    target_id: str
    state: MutationState = MutationState.REQUESTED
    error: str | None = None
    started_at: datetime = field(default_factory=utc_now)

    def applied(self) -> None:
        self.state = MutationState.LOCAL_APPLIED

    def confirmed(self) -> None:
        self.state = MutationState.CONFIRMED

    def rolled_back(self, error: Exception | str) -> None:
        self.state = MutationState.ROLLED_BACK
        self.error = str(error)


def _as_reaction(reaction: Reaction | dict[str, Any]) -> Reaction:
    return reaction if isinstance(reaction, Reaction) else Reaction.model_validate(reaction)


def toggle_reaction(reactions: list[Reaction], reaction: Reaction) -> list[Reaction]:
    """Apply ``reaction``: re-applying the same (author, emoji) removes it.

    The author's reactions with other emojis are left alone.
    """
    if any(r.same_as(reaction) for r in reactions):
        return [r for r in reactions if not r.same_as(reaction)]
    return [*reactions, reaction]


def remove_reaction(reactions: list[Reaction], reaction: Reaction) -> list[Reaction]:
    return [r for r in reactions if not r.same_as(reaction)]


def _as_source(source: AttachmentSource | bytes | str | Path, default_name: str) -> AttachmentSource:
    if isinstance(source, (bytes, bytearray)):
        source = AttachmentSource(name=default_name, data=bytes(source))
    elif not isinstance(source, AttachmentSource):
        source = AttachmentSource.from_path(source)
    if not source.data:
        raise MalformedInputError(f"Attachment {source.name!r} is empty")
    return source


class MutationEngine:
    def __init__(
        self,
        ctx: ChatContext,
        permissions: PermissionGate,
        users: UserDirectory,
        rooms: RoomRegistry,
        attachments: AttachmentPipeline,
        history_size: int = 200,
    ):
        self._ctx = ctx
        self._permissions = permissions
        self._users = users
        self._rooms = rooms
        self._attachments = attachments
        self.history: deque[Mutation] = deque(maxlen=history_size)

    def _begin(self, kind: str, target_id: str) -> Mutation:
        mutation = Mutation(kind=kind, target_id=target_id)
        self.history.append(mutation)
        return mutation

    # --- Message documents ---

    async def _insert_message(
        self,
        room: Room,
        attachment_fields: tuple[str, ...] = (),
        **fields: Any,
    ) -> Message:
        """Build a message document with a fresh id and upsert it into the room's collection.

        Raises:
            RoomNotFoundError: If the room document no longer exists.
            RemoteStoreError: If the write fails.
        """
        actual = await self._rooms.get_room_details(room)
        if actual is None:
            raise RoomNotFoundError(room.id)

        values: dict[str, Any] = {
            "id": str(make_uuid7()),
            "room_id": room.id,
            "user_id": self._ctx.user_id,
            "created_on": utc_now_iso(),
            "is_archived": False,
            "is_edited": False,
            "is_deleted": False,
        }
        values.update(fields)
        message = Message(**values)

        await self._ctx.execute(Upsert(actual.messages_id, message.to_document(), attachment_fields))

        for mention in message.mentions:
            await self._users.add_mention(mention.user_id, room.id, message.id)
        return message

    async def create_message(
        self,
        room: Room,
        text: str,
        mentions: list[Mention | dict[str, Any]] | None = None,
    ) -> Message | None:
        """Send a text message. Returns None if the send failed."""
        if not self._ctx.is_initialized or not self._ctx.user_id:
            return None

        parsed = [m if isinstance(m, Mention) else Mention.model_validate(m) for m in mentions or []]
        if parsed and not self._permissions.check(PermissionKey.MENTION_USERS, "create_message"):
            parsed = []

        mutation = self._begin("create_message", room.id)
        try:
            message = await self._insert_message(room, text=text, mentions=parsed)
        except ChatError as e:
            logger.error(f"Error in create_message: {e}")
            mutation.rolled_back(e)
            return None
        mutation.target_id = message.id
        mutation.confirmed()
        return message

    async def _archive_and_replace(self, kind: str, message: Message, room: Room, **fields: Any) -> Message | None:
        if not self._ctx.is_initialized:
            return None
        values: dict[str, Any] = {"created_on": message.created_on, "archived_message": message.id}
        values.update(fields)

        mutation = self._begin(kind, message.id)
        try:
            await self._ctx.execute(Update(room.messages_id, message.id, {"isArchived": True}))
            replacement = await self._insert_message(room, **values)
        except ChatError as e:
            logger.error(f"Error in {kind}: {e}")
            mutation.rolled_back(e)
            return None
        mutation.confirmed()
        return replacement

    async def save_edited_text_message(self, message: Message, room: Room) -> Message | None:
        """Archive ``message`` and publish its edited text as a new document."""
        if not self._permissions.check(PermissionKey.EDIT_OWN_MESSAGE, "save_edited_text_message"):
            return None
        return await self._archive_and_replace(
            "edit_message",
            message,
            room,
            text=message.text,
            thumbnail_image_token=message.thumbnail_image_token,
            large_image_token=message.large_image_token,
            file_attachment_token=message.file_attachment_token,
            is_edited=True,
            is_deleted=False,
            mentions=list(message.mentions),
            reactions=list(message.reactions),
        )

    async def save_deleted_message(
        self,
        message: Message,
        room: Room,
        kind: MessageKind = "text",
    ) -> Message | None:
        """Archive ``message`` and replace it with a deletion placeholder."""
        if not self._permissions.check(PermissionKey.DELETE_OWN_MESSAGE, "save_deleted_message"):
            return None
        return await self._archive_and_replace(
            "delete_message",
            message,
            room,
            text=DELETED_PLACEHOLDERS[kind],
            created_on=utc_now_iso(),
            thumbnail_image_token=None,
            large_image_token=None,
            file_attachment_token=None,
            is_edited=False,
            is_deleted=True,
            mentions=[],
        )

    # --- Reactions ---

    def _local_message(self, room_id: str, message_id: str) -> Message | None:
        entry = self._ctx.snapshot.find_message(room_id, message_id)
        return entry.message if entry is not None else None

    def _set_local_reactions(self, room_id: str, message_id: str, reactions: list[Reaction]) -> bool:
        def apply(state: ChatState) -> bool:
            entry = state.find_message(room_id, message_id)
            if entry is None:
                return False
            entry.message = entry.message.model_copy(update={"reactions": list(reactions)})
            return True

        return self._ctx.state.update(apply)

    async def update_message_reactions(
        self,
        message: Message,
        room: Room,
        reactions: list[Reaction],
    ) -> bool:
        """Replace the reaction list optimistically. Returns False if rolled back or skipped."""
        if not self._ctx.is_initialized or not self._ctx.user_id:
            return False

        current = self._local_message(room.id, message.id)
        if current is None:
            logger.warning(f"Message {message.id} not found in room {room.id}; reactions not updated")
            return False
        previous = list(current.reactions)

        mutation = self._begin("update_reactions", message.id)
        self._set_local_reactions(room.id, message.id, reactions)
        mutation.applied()

        try:
            await self._ctx.execute(
                Update(
                    room.messages_id,
                    message.id,
                    {"reactions": [r.to_document() for r in reactions]},
                )
            )
        except RemoteStoreError as e:
            logger.error(f"Error updating reactions, rolling back: {e}")
            self._set_local_reactions(room.id, message.id, previous)
            self._ctx.metrics.increment("rollbacks")
            mutation.rolled_back(e)
            ok = False
        else:
            mutation.confirmed()
            ok = True

        delay = self._ctx.options.consistency_check_delay
        if delay is not None:
            self._ctx.tasks.spawn(
                self._check_reactions(room, message.id, delay),
                name=f"reaction-check:{message.id}",
            )
        return ok

    async def _check_reactions(self, room: Room, message_id: str, delay: float) -> None:
        """Adopt the remote reaction list if it diverged from the local copy."""
        await asyncio.sleep(delay)
        try:
            result = await self._ctx.execute(by_id(room.messages_id, message_id, ATTACHMENT_FIELDS))
        except RemoteStoreError as e:
            logger.warning(f"Reaction consistency check failed for {message_id}: {e}")
            return
        doc = result.first()
        local = self._local_message(room.id, message_id)
        if doc is None or local is None:
            return
        remote = Message.model_validate(doc).reactions
        if [r.to_document() for r in remote] != [r.to_document() for r in local.reactions]:
            logger.info(f"Reactions for {message_id} diverged from the store; adopting remote copy")
            self._set_local_reactions(room.id, message_id, remote)

    async def add_reaction_to_message(
        self,
        message: Message,
        room: Room,
        reaction: Reaction | dict[str, Any],
    ) -> bool:
        if not self._permissions.check(PermissionKey.ADD_REACTION, "add_reaction_to_message"):
            return False
        current = self._local_message(room.id, message.id)
        if current is None:
            logger.warning(f"Message {message.id} not found in room {room.id}")
            return False
        reactions = toggle_reaction(list(current.reactions), _as_reaction(reaction))
        return await self.update_message_reactions(current, room, reactions)

    async def remove_reaction_from_message(
        self,
        message: Message,
        room: Room,
        reaction: Reaction | dict[str, Any],
    ) -> bool:
        if not self._permissions.check(PermissionKey.REMOVE_OWN_REACTION, "remove_reaction_from_message"):
            return False
        current = self._local_message(room.id, message.id)
        if current is None:
            logger.warning(f"Message {message.id} not found in room {room.id}")
            return False
        reactions = remove_reaction(list(current.reactions), _as_reaction(reaction))
        return await self.update_message_reactions(current, room, reactions)

    # --- Attachments ---

    async def _attachment_preconditions(self, room: Room) -> tuple[str, Room]:
        if not self._ctx.is_initialized:
            raise NotInitializedError("No remote store attached")
        if not self._ctx.user_id:
            raise MissingUserError("No current user id")
        actual = await self._rooms.get_room_details(room)
        if actual is None:
            raise RoomNotFoundError(room.id)
        return await self._users.current_user_name(), actual

    async def _insert_attachment_message(self, room: Room, attachment_fields: tuple[str, ...], **fields: Any) -> Message:
        try:
            return await self._insert_message(room, attachment_fields=attachment_fields, **fields)
        except RemoteStoreError as e:
            raise AttachmentUploadError(f"Could not write attachment message: {e}") from e

    async def create_image_message(
        self,
        room: Room,
        source: AttachmentSource | bytes | str | Path,
        text: str | None = None,
    ) -> Message:
        """Send an image: thumbnail first, then the full-resolution bytes.

        Raises:
            MalformedInputError, NotInitializedError, MissingUserError,
            RoomNotFoundError, ImageProcessingError, AttachmentUploadError
        """
        source = _as_source(source, "image.jpg")
        user_name, actual = await self._attachment_preconditions(room)
        mutation = self._begin("create_image_message", room.id)
        user_id = self._ctx.user_id

        try:
            thumbnail = make_thumbnail(source.data)
            thumbnail_token = await self._attachments.upload(
                thumbnail, attachment_metadata(user_id, user_name, "thumbnail", source)
            )
            message = await self._insert_attachment_message(
                actual,
                ("thumbnailImageToken", "largeImageToken"),
                text=text or "",
                thumbnail_image_token=thumbnail_token,
            )
            mutation.target_id = message.id
            mutation.applied()

            large_token = await self._attachments.upload(
                source.data, attachment_metadata(user_id, user_name, "large", source)
            )
            try:
                await self._ctx.execute(
                    Update(
                        actual.messages_id,
                        message.id,
                        {"largeImageToken": large_token.to_document()},
                        ("largeImageToken",),
                    )
                )
            except RemoteStoreError as e:
                raise AttachmentUploadError(f"Could not attach full-resolution image: {e}") from e
        except ChatError as e:
            logger.error(f"Error in create_image_message: {e}")
            mutation.rolled_back(e)
            raise

        mutation.confirmed()
        return message.model_copy(update={"large_image_token": large_token})

    async def create_file_message(
        self,
        room: Room,
        source: AttachmentSource | bytes | str | Path,
        text: str | None = None,
    ) -> Message:
        """Send a file. The text defaults to the file name.

        Raises:
            MalformedInputError, NotInitializedError, MissingUserError,
            RoomNotFoundError, AttachmentUploadError
        """
        source = _as_source(source, "file.bin")
        user_name, actual = await self._attachment_preconditions(room)
        mutation = self._begin("create_file_message", room.id)

        try:
            token = await self._attachments.upload(
                source.data, attachment_metadata(self._ctx.user_id, user_name, "file", source)
            )
            message = await self._insert_attachment_message(
                actual,
                ("fileAttachmentToken",),
                text=text or source.name,
                file_attachment_token=token,
            )
        except ChatError as e:
            logger.error(f"Error in create_file_message: {e}")
            mutation.rolled_back(e)
            raise

        mutation.target_id = message.id
        mutation.confirmed()
        return message
