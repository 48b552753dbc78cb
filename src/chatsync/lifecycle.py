"""Handle and background-task bookkeeping.

HandleRegistry holds every subscription/observer handle the session owns,
keyed by what it watches:

    - "rooms", "dm_rooms": room registry observers
    - "user", "all_users": user directory observers
    - "room:{room_id}": per-room message subscription + observer
    - "message:{collection_id}:{message_id}": single-message watchers

There is at most one entry per key. Checking and registering happen without
an await in between, which is what keeps "one subscription per room" true
under cooperative scheduling.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from .metrics import Metrics
from .store import Handle

logger = logging.getLogger(__name__)


def room_key(room_id: str) -> str:
    return f"room:{room_id}"


def message_key(collection_id: str, message_id: str) -> str:
    return f"message:{collection_id}:{message_id}"


def cancel_handle(handle: Handle, metrics: Metrics | None = None) -> bool:
    """Cancel a handle unless it is already cancelled.

    Returns True if this call cancelled it. Failures are logged, never raised.
    """
    if handle.is_cancelled:
        return False
    try:
        handle.cancel()
    except Exception:
        logger.warning(f"Failed to cancel {handle!r}", exc_info=True)
        return False
    if metrics is not None:
        metrics.increment("handles_cancelled")
    return True


class HandleRegistry:
    def __init__(self, metrics: Metrics | None = None):
        self._handles: dict[str, list[Handle]] = {}
        self._metrics = metrics

    def __contains__(self, key: str) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def keys(self) -> list[str]:
        return list(self._handles)

    def get(self, key: str) -> list[Handle]:
        return list(self._handles.get(key, []))

    def register(self, key: str, *handles: Handle) -> None:
        if key in self._handles:
            raise KeyError(f"Handles already registered for {key}")
        self._handles[key] = list(handles)

    def claim(self, key: str) -> bool:
        """Reserve ``key`` with an empty entry. False if it is already taken."""
        if key in self._handles:
            return False
        self._handles[key] = []
        return True

    def attach(self, key: str, handle: Handle) -> None:
        self._handles.setdefault(key, []).append(handle)

    def release(self, key: str) -> int:
        """Cancel and forget the handles under ``key``."""
        cancelled = 0
        for handle in self._handles.pop(key, []):
            if cancel_handle(handle, self._metrics):
                cancelled += 1
        return cancelled

    def cancel_all(self) -> int:
        """Cancel every handle and clear the registry. Safe to call repeatedly."""
        cancelled = 0
        for key in list(self._handles):
            cancelled += self.release(key)
        if cancelled:
            logger.info(f"Cancelled {cancelled} handles")
        return cancelled

    def all_handles(self) -> list[Handle]:
        return [h for handles in self._handles.values() for h in handles]


class BackgroundTasks:
    """Fire-and-forget tasks with strong references and logged failures."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; dropping background task {name or coro!r}")
            coro.close()
            return None
        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait until no background tasks remain (including ones spawned while waiting)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
