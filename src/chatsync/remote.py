"""HTTP remote store.

Talks to a document store's HTTP API:

    POST {url}/api/v4/store/execute
    Authorization: Bearer <token>
    {"statement": "<query text>", "args": {...}}

    -> {"items": [{"value": {...}}, ...], "mutatedDocumentIds": [...]}

The HTTP peer queries the server directly, so subscriptions are local
handles only. Observers are emulated by polling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx

from .errors import RemoteStoreError
from .models import AttachmentToken
from .queries import Statement
from .store import (
    AttachmentEvent,
    Handle,
    ObserverCallback,
    QueryResult,
    QueryResultItem,
    RemoteStore,
)

logger = logging.getLogger(__name__)

EXECUTE_PATH = "/api/v4/store/execute"


class HttpRemoteStore(RemoteStore):
    """Remote HTTP API store."""

    def __init__(
        self,
        url: str,
        bearer_token: str | None = None,
        poll_interval: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the HTTP store.

        Args:
            url: Base URL of the store's HTTP API
            bearer_token: Bearer token sent with every request
            poll_interval: Seconds between observer polls
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._url = url.rstrip("/")
        self._bearer_token = bearer_token
        self._poll_interval = poll_interval
        self._client = httpx.AsyncClient(timeout=30.0, transport=transport)
        self._pollers: set[asyncio.Task] = set()

    @property
    def url(self) -> str:
        return self._url

    def _headers(self) -> dict[str, str]:
        if not self._bearer_token:
            return {}
        return {"Authorization": f"Bearer {self._bearer_token}"}

    async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._client.request(
                method,
                f"{self._url}{path}",
                json=json,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"Request to {path} failed: {e}") from e

        if response.status_code >= 400:
            raise RemoteStoreError(f"API error {response.status_code}: {response.text}")

        if response.status_code == 204 or not response.content:
            return None

        return response.json()

    async def execute(self, statement: Statement) -> QueryResult:
        body = await self._request(
            "POST",
            EXECUTE_PATH,
            json={"statement": statement.text, "args": statement.params},
        )
        if not body:
            return QueryResult()
        items = [
            QueryResultItem(value=item["value"] if "value" in item else item)
            for item in body.get("items", [])
        ]
        return QueryResult(
            items=items,
            mutated_document_ids=list(body.get("mutatedDocumentIds", [])),
        )

    def register_subscription(self, statement: Statement) -> Handle:
        return Handle(description=f"subscription {statement.text}")

    async def _poll(self, statement: Statement, callback: ObserverCallback, handle: Handle) -> None:
        last: list[dict[str, Any]] | None = None
        while not handle.is_cancelled:
            try:
                result = await self.execute(statement)
            except RemoteStoreError:
                logger.warning(f"Observer poll failed for {statement.text}", exc_info=True)
            else:
                values = result.values()
                if values != last and not handle.is_cancelled:
                    last = values
                    try:
                        callback(result)
                    except Exception:
                        logger.warning(f"Observer callback failed for {statement.text}", exc_info=True)
            await asyncio.sleep(self._poll_interval)

    def register_observer(self, statement: Statement, callback: ObserverCallback) -> Handle:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise RemoteStoreError("HTTP observers require a running event loop") from e

        task: asyncio.Task | None = None

        def stop() -> None:
            if task is not None:
                task.cancel()

        handle = Handle(on_cancel=stop, description=f"observer {statement.text}")
        task = loop.create_task(self._poll(statement, callback, handle))
        self._pollers.add(task)
        task.add_done_callback(self._pollers.discard)
        return handle

    async def new_attachment(self, data: bytes, metadata: dict[str, str]) -> AttachmentToken:
        raise RemoteStoreError("Attachments are not available over the HTTP API")

    def fetch_attachment(
        self,
        token: AttachmentToken,
        on_event: Callable[[AttachmentEvent], None],
    ) -> Handle:
        raise RemoteStoreError("Attachments are not available over the HTTP API")

    async def aclose(self) -> None:
        for task in list(self._pollers):
            task.cancel()
        await self._client.aclose()

    def close(self) -> None:
        for task in list(self._pollers):
            task.cancel()
