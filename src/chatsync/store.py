"""Remote store boundary.

The remote document-sync engine is consumed, not implemented, here. This
module defines the interface every adapter implements:

    - RemoteStore: execute statements, register subscriptions/observers,
      stage and stream attachments
    - Handle: cancellable registration returned by register_* / fetch_attachment
    - QueryResult: the result set passed to execute() callers and observers

Adapters:
    - InMemoryRemoteStore (chatsync.memory): ephemeral, for tests and demos
    - HttpRemoteStore (chatsync.remote): HTTP API client with polling observers
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from .errors import RemoteStoreError  # noqa: F401  (re-exported for adapters)
from .models import AttachmentToken
from .queries import Statement

logger = logging.getLogger(__name__)


@dataclass
class QueryResultItem:
    value: dict[str, Any]


@dataclass
class QueryResult:
    items: list[QueryResultItem] = field(default_factory=list)
    mutated_document_ids: list[str] = field(default_factory=list)

    @classmethod
    def of(cls, documents: list[dict[str, Any]]) -> "QueryResult":
        return cls(items=[QueryResultItem(value=doc) for doc in documents])

    def first(self) -> dict[str, Any] | None:
        return self.items[0].value if self.items else None

    def values(self) -> list[dict[str, Any]]:
        return [item.value for item in self.items]


class Handle:
    """A cancellable registration (subscription, observer, or fetch).

    ``cancel()`` on an already-cancelled handle raises, mirroring remote SDKs
    that reject double cancellation. Callers check ``is_cancelled`` first;
    see chatsync.lifecycle.cancel_handle.
    """

    def __init__(self, on_cancel: Callable[[], None] | None = None, description: str = ""):
        self._on_cancel = on_cancel
        self._cancelled = False
        self.description = description

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            raise RemoteStoreError(f"Handle already cancelled: {self.description}")
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<Handle {self.description!r} {state}>"


class Attachment(ABC):
    """A fetched attachment: metadata plus access to the bytes."""

    @property
    @abstractmethod
    def metadata(self) -> dict[str, str]: ...

    @abstractmethod
    def get_data(self) -> bytes | Awaitable[bytes]:
        """Return the payload; adapters may return an awaitable."""
        ...


@dataclass
class AttachmentProgress:
    downloaded_bytes: int
    total_bytes: int


@dataclass
class AttachmentCompleted:
    attachment: Attachment


@dataclass
class AttachmentDeleted:
    pass


AttachmentEvent = Union[AttachmentProgress, AttachmentCompleted, AttachmentDeleted]
ObserverCallback = Callable[[QueryResult], None]


class RemoteStore(ABC):
    """Abstract remote document store.

    All adapters implement the same interface so the sync engine works the
    same against an in-memory store, an HTTP peer, or a native SDK binding.
    """

    @abstractmethod
    async def execute(self, statement: Statement) -> QueryResult:
        """Execute a query or mutation.

        Mutations use upsert-by-id (Upsert) or targeted field updates (Update).

        Raises:
            RemoteStoreError: If the remote engine rejects the statement.
        """
        ...

    @abstractmethod
    def register_subscription(self, statement: Statement) -> Handle:
        """Declare durable remote interest in a query. No callback."""
        ...

    @abstractmethod
    def register_observer(self, statement: Statement, callback: ObserverCallback) -> Handle:
        """Invoke ``callback(result)`` on every change to the query's result set."""
        ...

    @abstractmethod
    async def new_attachment(self, data: bytes, metadata: dict[str, str]) -> AttachmentToken:
        """Stage binary content and return its token."""
        ...

    @abstractmethod
    def fetch_attachment(
        self,
        token: AttachmentToken,
        on_event: Callable[[AttachmentEvent], None],
    ) -> Handle:
        """Start a non-blocking download; events are delivered to ``on_event``."""
        ...

    def close(self) -> None:
        """Release adapter resources. Default: nothing to release."""
        return None

    async def aclose(self) -> None:
        self.close()
