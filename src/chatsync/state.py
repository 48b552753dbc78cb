"""Local observable state.

``StateStore.update(fn)`` is the only way to change ``ChatState``: ``fn``
mutates the state in place under a re-entrant lock, then listeners are
notified with the state. Observer firings that arrive from other threads are
serialized by the same lock, so a per-room merge is never interleaved.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, fields
from typing import Callable, TypeVar

from .models import ChatUser, MessageWithUser, Room

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ChatState:
    current_user: ChatUser | None = None
    all_users: list[ChatUser] = field(default_factory=list)
    users_loading: bool = True

    rooms: list[Room] = field(default_factory=list)
    dm_rooms: list[Room] = field(default_factory=list)
    rooms_loading: bool = True

    messages_by_room: dict[str, list[MessageWithUser]] = field(default_factory=dict)
    active_room_id: str | None = None

    rbac: dict[str, bool] = field(default_factory=dict)

    @property
    def messages_loading(self) -> bool:
        """True until every known room has a message list."""
        known = [room.id for room in (*self.rooms, *self.dm_rooms)]
        if self.rooms_loading:
            return True
        return any(room_id not in self.messages_by_room for room_id in known)

    def find_room(self, room_id: str) -> Room | None:
        for room in (*self.rooms, *self.dm_rooms):
            if room.id == room_id:
                return room
        return None

    def find_user(self, user_id: str) -> ChatUser | None:
        for user in self.all_users:
            if user.id == user_id:
                return user
        if self.current_user is not None and self.current_user.id == user_id:
            return self.current_user
        return None

    def find_message(self, room_id: str, message_id: str) -> MessageWithUser | None:
        for entry in self.messages_by_room.get(room_id, []):
            if entry.id == message_id:
                return entry
        return None


Listener = Callable[[ChatState], None]


class StateStore:
    """Single writer for ChatState."""

    def __init__(self, state: ChatState | None = None):
        self._state = state or ChatState()
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> ChatState:
        return self._state

    def update(self, fn: Callable[[ChatState], T]) -> T:
        """Apply ``fn`` to the state atomically and notify listeners."""
        with self._lock:
            result = fn(self._state)
            for listener in list(self._listeners):
                try:
                    listener(self._state)
                except Exception:
                    logger.warning("State listener failed", exc_info=True)
            return result

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        """Replace the state with a fresh ChatState (keeps RBAC overrides)."""

        def clear(state: ChatState) -> None:
            rbac = dict(state.rbac)
            fresh = ChatState(rbac=rbac)
            for f in fields(ChatState):
                setattr(state, f.name, getattr(fresh, f.name))

        self.update(clear)
