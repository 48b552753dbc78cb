"""In-memory remote store for tests and demos.

Documents are kept as plain dicts per collection. Statements are evaluated
directly from their typed structure. Observers fire once on registration and
again after every mutation that changes their result set.

All data is lost when the store is garbage collected.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable

from uuid_extensions import uuid7 as make_uuid7

from .errors import RemoteStoreError
from .models import AttachmentToken
from .queries import AnyOf, Condition, Contains, Eq, Gte, Select, Statement, Update, Upsert
from .store import (
    Attachment,
    AttachmentCompleted,
    AttachmentDeleted,
    AttachmentEvent,
    AttachmentProgress,
    Handle,
    ObserverCallback,
    QueryResult,
    RemoteStore,
)

logger = logging.getLogger(__name__)

# Bytes per progress event when streaming an attachment.
CHUNK_SIZE = 64 * 1024


def _matches(doc: dict[str, Any], condition: Condition) -> bool:
    if isinstance(condition, AnyOf):
        return any(_matches(doc, c) for c in condition.conditions)
    value = doc.get(condition.field)
    if isinstance(condition, Eq):
        return value == condition.value
    if isinstance(condition, Contains):
        return isinstance(value, list) and condition.value in value
    if isinstance(condition, Gte):
        if value is None or isinstance(value, bool):
            return False
        # Mixed types (ISO string vs epoch number) never match.
        if isinstance(value, str) != isinstance(condition.value, str):
            return False
        return value >= condition.value
    raise RemoteStoreError(f"Unsupported condition: {condition!r}")


def _sort_key(field: str):
    def key(doc: dict[str, Any]):
        value = doc.get(field)
        # None first, then by type name so mixed columns still order.
        return (value is not None, type(value).__name__, value if value is not None else "")

    return key


@dataclass
class _Observer:
    statement: Select
    callback: ObserverCallback
    handle: Handle
    last: list[dict[str, Any]] | None = None


class MemoryAttachment(Attachment):
    def __init__(self, data: bytes, metadata: dict[str, str]):
        self._data = data
        self._metadata = dict(metadata)

    @property
    def metadata(self) -> dict[str, str]:
        return self._metadata

    def get_data(self) -> bytes:
        return self._data


class InMemoryRemoteStore(RemoteStore):
    """Ephemeral RemoteStore backed by dicts."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._observers: list[_Observer] = []
        self._subscriptions: list[tuple[Statement, Handle]] = []
        self._attachments: dict[str, tuple[bytes, dict[str, str]]] = {}
        self.executed: list[Statement] = []

    # --- Inspection helpers (tests) ---

    def documents(self, collection: str) -> list[dict[str, Any]]:
        """Return copies of every document in a collection, in insertion order."""
        return copy.deepcopy(list(self._collections.get(collection, {}).values()))

    def get_document(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def active_observers(self) -> list[Select]:
        return [o.statement for o in self._observers if not o.handle.is_cancelled]

    def active_subscriptions(self) -> list[Statement]:
        return [s for s, h in self._subscriptions if not h.is_cancelled]

    def insert_raw(self, collection: str, document: dict[str, Any]) -> None:
        """Write a document as-is (e.g. a legacy-format message) and notify observers."""
        self._collections.setdefault(collection, {})[document["_id"]] = copy.deepcopy(document)
        self._notify()

    def delete_attachment(self, token: AttachmentToken) -> None:
        self._attachments.pop(token.id, None)

    # --- Statement evaluation ---

    def _select(self, statement: Select) -> list[dict[str, Any]]:
        docs = [
            doc
            for doc in self._collections.get(statement.collection, {}).values()
            if all(_matches(doc, c) for c in statement.where)
        ]
        if statement.order_by:
            docs = sorted(docs, key=_sort_key(statement.order_by))
        return copy.deepcopy(docs)

    def _apply(self, statement: Statement) -> QueryResult:
        if isinstance(statement, Select):
            return QueryResult.of(self._select(statement))

        collection = self._collections.setdefault(statement.collection, {})
        if isinstance(statement, Upsert):
            doc = copy.deepcopy(statement.document)
            doc_id = doc.get("_id")
            if not doc_id:
                raise RemoteStoreError("Upsert document has no _id")
            if doc_id in collection:
                collection[doc_id].update(doc)
            else:
                collection[doc_id] = doc
            return QueryResult(
                items=[],
                mutated_document_ids=[doc_id],
            )

        if isinstance(statement, Update):
            existing = collection.get(statement.doc_id)
            if existing is None:
                return QueryResult()
            existing.update(copy.deepcopy(statement.fields))
            return QueryResult(mutated_document_ids=[statement.doc_id])

        raise RemoteStoreError(f"Unsupported statement: {statement!r}")

    def _fire(self, observer: _Observer) -> None:
        current = self._select(observer.statement)
        if observer.last is not None and current == observer.last:
            return
        observer.last = current
        try:
            observer.callback(QueryResult.of(copy.deepcopy(current)))
        except Exception:
            logger.warning(f"Observer callback failed for {observer.statement.text}", exc_info=True)

    def _notify(self) -> None:
        for observer in list(self._observers):
            if not observer.handle.is_cancelled:
                self._fire(observer)

    # --- RemoteStore interface ---

    async def execute(self, statement: Statement) -> QueryResult:
        self.executed.append(statement)
        result = self._apply(statement)
        if result.mutated_document_ids:
            self._notify()
        return result

    def register_subscription(self, statement: Statement) -> Handle:
        handle = Handle(description=f"subscription {statement.text}")
        self._subscriptions.append((statement, handle))
        return handle

    def register_observer(self, statement: Statement, callback: ObserverCallback) -> Handle:
        if not isinstance(statement, Select):
            raise RemoteStoreError("Observers require a SELECT statement")

        observer: _Observer | None = None

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        handle = Handle(on_cancel=remove, description=f"observer {statement.text}")
        observer = _Observer(statement=statement, callback=callback, handle=handle)
        self._observers.append(observer)
        self._fire(observer)
        return handle

    async def new_attachment(self, data: bytes, metadata: dict[str, str]) -> AttachmentToken:
        token_id = str(make_uuid7())
        self._attachments[token_id] = (bytes(data), dict(metadata))
        return AttachmentToken(id=token_id, len=len(data), metadata=dict(metadata))

    def fetch_attachment(
        self,
        token: AttachmentToken,
        on_event: Callable[[AttachmentEvent], None],
    ) -> Handle:
        handle = Handle(description=f"fetch {token.id}")

        def deliver() -> None:
            if handle.is_cancelled:
                return
            stored = self._attachments.get(token.id)
            if stored is None:
                on_event(AttachmentDeleted())
                return
            data, metadata = stored
            total = len(data)
            for offset in range(CHUNK_SIZE, total, CHUNK_SIZE):
                on_event(AttachmentProgress(downloaded_bytes=offset, total_bytes=total))
            on_event(AttachmentProgress(downloaded_bytes=total, total_bytes=total))
            on_event(AttachmentCompleted(attachment=MemoryAttachment(data, metadata)))

        try:
            asyncio.get_running_loop().call_soon(deliver)
        except RuntimeError:
            deliver()
        return handle
