"""Configuration options for the Chat client.

Provides ChatOptions for configuring store selection, the session user, and
sync behavior. Supports environment variable overrides for CI/CD and
containerized deployments.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Callable

from .models import RetentionConfig
from .permissions import PermissionKey


class ChatConfigError(Exception):
    """Raised when ChatOptions configuration is invalid."""

    pass


NotificationHandler = Callable[[str, str], None]


@dataclass
class ChatOptions:
    """Configuration options for the Chat client.

    Supports two store modes (mutually exclusive):
    1. Remote: HTTP API connection to the document store
    2. In-memory: Ephemeral store for testing

    Environment Variables:
        CHATSYNC_URL: Remote store URL (when no mode is given explicitly)
        CHATSYNC_BEARER_TOKEN: Bearer token for the remote store
        CHATSYNC_USER_ID: Session user id
        CHATSYNC_RETENTION_DAYS: Global message retention in days

    Examples:
        # Remote
        options = ChatOptions(url="https://store.example.com", user_id="alice")

        # In-memory for tests
        options = ChatOptions(in_memory=True, user_id="test-user")
    """

    user_id: str | None = None
    """Id of the session user. Required."""

    user_collection_key: str = "users"
    """Collection holding user documents."""

    in_memory: bool = False
    """Use an ephemeral in-memory store."""

    url: str | None = None
    """Remote store URL."""

    bearer_token: str | None = None
    """Bearer token for the remote store."""

    retention: RetentionConfig | None = None
    """Global message retention. None means the 30-day default."""

    rbac_config: dict[str, bool] = field(default_factory=dict)
    """Permission overrides; absent keys use the defaults."""

    auto_subscribe_rooms: bool = True
    """Subscribe to every room's messages as rooms are observed."""

    consistency_check_delay: float | None = 1.0
    """Seconds after a reaction write before re-reading it. None disables."""

    poll_interval: float = 2.0
    """Seconds between observer polls (remote store only)."""

    notification_handler: NotificationHandler | None = field(default=None, repr=False)
    """Called with (title, preview) for new messages that should notify."""

    _store_type: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        """Validate options and apply environment variable overrides."""
        self._apply_env_overrides()
        self._validate()
        self._resolve_store()

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Explicit options take priority; CHATSYNC_URL is only used when no
        store mode was given.
        """
        if not self.in_memory and self.url is None:
            env_url = os.environ.get("CHATSYNC_URL")
            if env_url:
                self.url = env_url

        if not self.bearer_token:
            self.bearer_token = os.environ.get("CHATSYNC_BEARER_TOKEN")

        if not self.user_id:
            self.user_id = os.environ.get("CHATSYNC_USER_ID")

        if self.retention is None:
            env_days = os.environ.get("CHATSYNC_RETENTION_DAYS")
            if env_days:
                try:
                    self.retention = RetentionConfig.for_days(int(env_days))
                except ValueError as e:
                    raise ChatConfigError(
                        f"CHATSYNC_RETENTION_DAYS must be an integer, got {env_days!r}"
                    ) from e

    def _validate(self) -> None:
        """Validate that options are consistent."""
        if self.in_memory and self.url is not None:
            raise ChatConfigError("in_memory cannot be combined with url. Choose one store type.")

        if not self.user_id:
            raise ChatConfigError("user_id is required (or set CHATSYNC_USER_ID).")

        if self.retention is not None and not self.retention.retain_indefinitely:
            if self.retention.days is not None and self.retention.days <= 0:
                raise ChatConfigError("retention days must be positive.")

        unknown = set(self.rbac_config) - {k.value for k in PermissionKey}
        if unknown:
            raise ChatConfigError(f"Unknown permission keys: {', '.join(sorted(unknown))}")

        if self.consistency_check_delay is not None and self.consistency_check_delay < 0:
            raise ChatConfigError("consistency_check_delay cannot be negative.")

        if self.poll_interval <= 0:
            raise ChatConfigError("poll_interval must be positive.")

    def _resolve_store(self) -> None:
        if self.in_memory:
            self._store_type = "in_memory"
        elif self.url is not None:
            self._store_type = "remote"
            self.url = self.url.rstrip("/")
        else:
            self._store_type = None

    @property
    def store_type(self) -> str | None:
        """The resolved store type: 'remote', 'in_memory', or None (none configured)."""
        return self._store_type

    def is_remote(self) -> bool:
        return self._store_type == "remote"

    def is_in_memory(self) -> bool:
        return self._store_type == "in_memory"

    @classmethod
    def for_remote(cls, url: str, user_id: str, bearer_token: str | None = None, **kwargs: Any) -> "ChatOptions":
        return cls(url=url, user_id=user_id, bearer_token=bearer_token, **kwargs)

    @classmethod
    def for_in_memory(cls, user_id: str, **kwargs: Any) -> "ChatOptions":
        """Create options for an in-memory store (testing)."""
        return cls(in_memory=True, user_id=user_id, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        return {
            "store_type": self._store_type,
            "url": self.url,
            "user_id": self.user_id,
            "user_collection_key": self.user_collection_key,
            "retention_days": self.retention.effective_days if self.retention else None,
            "rbac_config": dict(self.rbac_config),
            "auto_subscribe_rooms": self.auto_subscribe_rooms,
            "has_bearer_token": self.bearer_token is not None,
        }
