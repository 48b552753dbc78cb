"""Normalization of legacy-format message documents.

Older clients wrote messages with a different schema:

    msg       -> text
    authorId  -> userId   (falling back to ``a``)
    timeMs    -> createdOn (epoch ms or ISO string; falling back to ``b``, epoch ms)
    room      -> roomId
    authorCs  -> the author's call-sign, used as a display name

Documents are normalized once, at ingestion. Everything past this module
sees a current-schema Message.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .models import Message, format_timestamp, parse_timestamp

CONVERTED_MARKER = "hasBeenConverted"
LEGACY_FIELDS = ("msg", "authorId", "a", "timeMs", "b", "room", "authorCs")


def is_legacy(doc: dict[str, Any]) -> bool:
    if doc.get(CONVERTED_MARKER):
        return False
    return any(name in doc for name in LEGACY_FIELDS)


def convert_legacy_message(doc: dict[str, Any]) -> dict[str, Any]:
    """Return a current-schema copy of ``doc``.

    Documents already carrying the converted marker are returned unchanged.
    Canonical fields that are present always win over legacy ones.
    """
    if doc.get(CONVERTED_MARKER):
        return doc

    converted = dict(doc)

    if not converted.get("text") and doc.get("msg") is not None:
        converted["text"] = str(doc["msg"])

    if not converted.get("userId"):
        author = doc.get("authorId") or doc.get("a")
        if author:
            converted["userId"] = str(author)

    if not converted.get("createdOn"):
        created = parse_timestamp(doc.get("timeMs")) or parse_timestamp(doc.get("b"))
        if created is not None:
            converted["createdOn"] = format_timestamp(created)

    if not converted.get("roomId") and doc.get("room"):
        converted["roomId"] = str(doc["room"])

    converted.setdefault("isArchived", False)
    converted[CONVERTED_MARKER] = True
    return converted


@dataclass
class NormalizedMessage:
    """Result of ingesting a raw document."""

    message: Message
    was_legacy: bool
    # Display name found on a legacy document, if any.
    author_name: str | None = None

    @property
    def needs_write_back(self) -> bool:
        return self.was_legacy


def normalize_message(doc: dict[str, Any]) -> NormalizedMessage:
    """Parse a raw store document into a Message, converting legacy fields."""
    if is_legacy(doc):
        converted = convert_legacy_message(doc)
        return NormalizedMessage(
            message=Message.model_validate(converted),
            was_legacy=True,
            author_name=doc.get("authorCs"),
        )
    return NormalizedMessage(message=Message.model_validate(doc), was_legacy=False)
