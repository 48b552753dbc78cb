"""Explicit per-session context shared by every component.

A ChatContext is created by ``Chat.create()`` and passed to each component at
construction. There is no module-level instance: two Chat objects never share
state unless they share a context.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import NotInitializedError
from .lifecycle import BackgroundTasks, HandleRegistry
from .metrics import Metrics
from .options import ChatOptions
from .queries import Statement, statement_kind
from .state import ChatState, StateStore
from .store import QueryResult, RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class ChatContext:
    options: ChatOptions
    store: RemoteStore | None = None
    state: StateStore = field(default_factory=StateStore)
    metrics: Metrics = field(default_factory=Metrics)
    handles: HandleRegistry = field(init=False)
    tasks: BackgroundTasks = field(default_factory=BackgroundTasks)

    def __post_init__(self) -> None:
        self.handles = HandleRegistry(self.metrics)

    @property
    def user_id(self) -> str:
        return self.options.user_id or ""

    @property
    def snapshot(self) -> ChatState:
        return self.state.state

    @property
    def is_initialized(self) -> bool:
        return self.store is not None

    def require_store(self) -> RemoteStore:
        if self.store is None:
            raise NotInitializedError("No remote store attached")
        return self.store

    async def execute(self, statement: Statement) -> QueryResult:
        """Execute a statement against the store, timed under ``execute:<kind>``."""
        store = self.require_store()
        async with self.metrics.timed(f"execute:{statement_kind(statement)}"):
            return await store.execute(statement)
