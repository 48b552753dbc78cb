"""Document models for chat data.

Documents travel to and from the remote store as plain dicts with camelCase
keys and an ``_id`` identity field. The models here validate those dicts,
expose snake_case attributes, and dump back to the wire form with
``to_document()``. Unknown keys are preserved so that fields written by
other clients (or by older message formats) survive a read/modify/write.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_RETENTION_DAYS = 30

ROOMS_COLLECTION = "rooms"
DM_ROOMS_COLLECTION = "dm_rooms"
MESSAGES_COLLECTION = "messages"
DM_MESSAGES_COLLECTION = "dm_messages"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with millisecond precision.

    All timestamps written by this package use this form so that string
    comparison in store queries matches chronological order.
    """
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_timestamp(utc_now())


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string or epoch-milliseconds number into an aware datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class Document(BaseModel):
    """Base for every document stored in the remote store."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_document(self) -> dict[str, Any]:
        """Dump to the wire form (camelCase keys, ``_id`` identity)."""
        return self.model_dump(by_alias=True, mode="json")


class AttachmentToken(Document):
    """Opaque reference to binary content stored beside a document."""

    id: str
    len: int = 0
    metadata: dict[str, str] = Field(default_factory=dict)


class Reaction(Document):
    user_id: str
    emoji: str
    unified: str | None = None
    unified_without_skin_tone: str | None = None

    def same_as(self, other: "Reaction") -> bool:
        """Reactions are identified by (author, emoji)."""
        return self.user_id == other.user_id and self.emoji == other.emoji


class Mention(Document):
    user_id: str
    start_index: int = 0
    end_index: int = 0


class ChatUser(Document):
    id: str = Field(alias="_id")
    name: str = ""
    # room id -> last-read timestamp; None means explicitly unsubscribed
    subscriptions: dict[str, str | None] = Field(default_factory=dict)
    mentions: dict[str, list[str]] = Field(default_factory=dict)
    profile_picture: AttachmentToken | None = None
    profile_picture_thumbnail: AttachmentToken | None = None

    def is_subscribed_to(self, room_id: str) -> bool:
        return self.subscriptions.get(room_id) is not None


class Room(Document):
    id: str = Field(alias="_id")
    name: str = ""
    messages_id: str = MESSAGES_COLLECTION
    collection_id: str = ROOMS_COLLECTION
    created_by: str = ""
    created_on: str | None = None
    is_generated: bool = False
    participants: list[str] | None = None
    retention_days: int | None = None

    @property
    def is_dm(self) -> bool:
        return self.collection_id == DM_ROOMS_COLLECTION


class Message(Document):
    id: str = Field(alias="_id")
    room_id: str = ""
    text: str = ""
    user_id: str = ""
    created_on: str | None = None

    thumbnail_image_token: AttachmentToken | None = None
    large_image_token: AttachmentToken | None = None
    file_attachment_token: AttachmentToken | None = None

    is_archived: bool = False
    archived_message: str | None = None
    is_edited: bool = False
    is_deleted: bool = False

    reactions: list[Reaction] = Field(default_factory=list)
    mentions: list[Mention] = Field(default_factory=list)

    has_been_converted: bool | None = None

    @property
    def created_at(self) -> datetime | None:
        return parse_timestamp(self.created_on)

    @property
    def has_attachment(self) -> bool:
        return any(
            token is not None
            for token in (
                self.thumbnail_image_token,
                self.large_image_token,
                self.file_attachment_token,
            )
        )


@dataclass
class MessageWithUser:
    """A message paired with its author, resolved from the local roster."""

    message: Message
    user: ChatUser | None = None

    @property
    def id(self) -> str:
        return self.message.id


@dataclass(frozen=True)
class RetentionConfig:
    """How long a room's messages are synchronized.

    ``retain_indefinitely`` wins over ``days``. ``days=None`` means the
    package default of 30 days.
    """

    retain_indefinitely: bool = False
    days: int | None = None

    @classmethod
    def forever(cls) -> "RetentionConfig":
        return cls(retain_indefinitely=True)

    @classmethod
    def for_days(cls, days: int) -> "RetentionConfig":
        return cls(days=days)

    @property
    def effective_days(self) -> int | None:
        """Days to retain, or None when retention is unbounded."""
        if self.retain_indefinitely:
            return None
        return self.days if self.days is not None else DEFAULT_RETENTION_DAYS


def resolve_retention(
    override: int | RetentionConfig | None,
    room: Room | None,
    global_config: RetentionConfig | None,
) -> RetentionConfig:
    """Pick the retention to apply.

    Precedence: call-time override > per-room setting > global config > default.
    """
    if isinstance(override, RetentionConfig):
        return override
    if override is not None:
        return RetentionConfig.for_days(override)
    if room is not None and room.retention_days is not None:
        return RetentionConfig.for_days(room.retention_days)
    if global_config is not None:
        return global_config
    return RetentionConfig()
