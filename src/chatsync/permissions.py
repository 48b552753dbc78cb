"""Permission gate.

Overrides are a partial mapping of permission key to bool. A key that is
present decides the answer, including an explicit False. Absent keys use the
defaults, which are permissive for every key.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Mapping

from .state import ChatState, StateStore

logger = logging.getLogger(__name__)


class PermissionKey(str, Enum):
    CREATE_ROOM = "canCreateRoom"
    EDIT_OWN_MESSAGE = "canEditOwnMessage"
    DELETE_OWN_MESSAGE = "canDeleteOwnMessage"
    ADD_REACTION = "canAddReaction"
    REMOVE_OWN_REACTION = "canRemoveOwnReaction"
    MENTION_USERS = "canMentionUsers"
    SUBSCRIBE_TO_ROOM = "canSubscribeToRoom"


DEFAULT_PERMISSIONS: dict[str, bool] = {key.value: True for key in PermissionKey}


def _key(key: PermissionKey | str) -> str:
    return key.value if isinstance(key, PermissionKey) else key


class PermissionGate:
    def __init__(self, state: StateStore):
        self._state = state

    def can_perform_action(self, key: PermissionKey | str) -> bool:
        name = _key(key)
        overrides = self._state.state.rbac
        if name in overrides:
            return overrides[name]
        return DEFAULT_PERMISSIONS.get(name, True)

    def check(self, key: PermissionKey | str, action: str) -> bool:
        """Like can_perform_action, but logs a warning on denial."""
        allowed = self.can_perform_action(key)
        if not allowed:
            logger.warning(f"Permission denied: {_key(key)} ({action})")
        return allowed

    def update_rbac_config(self, patch: Mapping[PermissionKey | str, bool]) -> None:
        """Shallow-merge ``patch`` into the overrides. Absent keys are untouched."""
        if not patch:
            return
        normalized = {_key(k): bool(v) for k, v in patch.items()}

        def merge(state: ChatState) -> None:
            state.rbac = {**state.rbac, **normalized}

        self._state.update(merge)

    def overrides(self) -> dict[str, bool]:
        return dict(self._state.state.rbac)
