"""Typed statements issued against the remote store.

Every statement renders to the query text and parameter map the remote
engine understands (``statement.text`` / ``statement.params``). Keeping the
structure alongside the text lets the in-memory adapter evaluate statements
without parsing query strings.

    stmt = Select(
        "messages",
        where=(Eq("roomId", "roomId", room_id),),
        order_by="createdOn",
    )
    stmt.text    # SELECT * FROM messages WHERE roomId = :roomId ORDER BY createdOn ASC
    stmt.params  # {"roomId": room_id}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

ATTACHMENT_FIELDS = ("thumbnailImageToken", "largeImageToken", "fileAttachmentToken")


@dataclass(frozen=True)
class Eq:
    field: str
    param: str
    value: Any

    @property
    def text(self) -> str:
        return f"{self.field} = :{self.param}"


@dataclass(frozen=True)
class Gte:
    field: str
    param: str
    value: Any

    @property
    def text(self) -> str:
        return f"{self.field} >= :{self.param}"


@dataclass(frozen=True)
class Contains:
    """Array membership: ``array_contains(field, :param)``."""

    field: str
    param: str
    value: Any

    @property
    def text(self) -> str:
        return f"array_contains({self.field}, :{self.param})"


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple["Condition", ...]

    @property
    def text(self) -> str:
        return "(" + " OR ".join(c.text for c in self.conditions) + ")"


Condition = Union[Eq, Gte, Contains, AnyOf]


def _collect_params(conditions: tuple[Condition, ...], into: dict[str, Any]) -> None:
    for condition in conditions:
        if isinstance(condition, AnyOf):
            _collect_params(condition.conditions, into)
        else:
            into[condition.param] = condition.value


def _collection_clause(collection: str, attachment_fields: tuple[str, ...]) -> str:
    if not attachment_fields:
        return collection
    declared = ", ".join(f"{name} ATTACHMENT" for name in attachment_fields)
    return f"COLLECTION {collection} ({declared})"


@dataclass(frozen=True)
class Select:
    collection: str
    where: tuple[Condition, ...] = ()
    order_by: str | None = None
    attachment_fields: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        parts = [f"SELECT * FROM {_collection_clause(self.collection, self.attachment_fields)}"]
        if self.where:
            parts.append("WHERE " + " AND ".join(c.text for c in self.where))
        if self.order_by:
            parts.append(f"ORDER BY {self.order_by} ASC")
        return " ".join(parts)

    @property
    def params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        _collect_params(self.where, params)
        return params


@dataclass(frozen=True)
class Upsert:
    """Insert a whole document; on id conflict, update the existing one."""

    collection: str
    document: dict[str, Any]
    attachment_fields: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        target = _collection_clause(self.collection, self.attachment_fields)
        return f"INSERT INTO {target} DOCUMENTS (:doc) ON ID CONFLICT DO UPDATE"

    @property
    def params(self) -> dict[str, Any]:
        return {"doc": self.document}


@dataclass(frozen=True)
class Update:
    """Set individual fields on one document, addressed by id."""

    collection: str
    doc_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    attachment_fields: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        target = _collection_clause(self.collection, self.attachment_fields)
        assignments = ", ".join(f"{name} = :{name}" for name in self.fields)
        return f"UPDATE {target} SET {assignments} WHERE _id = :id"

    @property
    def params(self) -> dict[str, Any]:
        return {**self.fields, "id": self.doc_id}


Statement = Union[Select, Upsert, Update]


def statement_kind(statement: Statement) -> str:
    """Short name used for metrics and logging."""
    if isinstance(statement, Select):
        return "select"
    if isinstance(statement, Upsert):
        return "upsert"
    return "update"


def by_id(collection: str, doc_id: str, attachment_fields: tuple[str, ...] = ()) -> Select:
    return Select(
        collection,
        where=(Eq("_id", "id", doc_id),),
        attachment_fields=attachment_fields,
    )
