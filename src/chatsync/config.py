"""Configuration management for the chatsync CLI.

Manages ~/.config/chatsync/config.yaml (or $XDG_CONFIG_HOME/chatsync/):
store URL, bearer token, session user, retention and permission overrides.
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import RetentionConfig


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "chatsync"


def get_global_config_path() -> Path:
    return get_config_dir() / "config.yaml"


def ensure_config_dir() -> Path:
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


DEFAULT_STORE_URL = "http://localhost:4000"


@dataclass
class GlobalConfig:
    """Global CLI configuration."""

    url: str = DEFAULT_STORE_URL
    bearer_token: str | None = None
    user_id: str | None = None
    user_collection_key: str = "users"
    # None = default (30 days); 0 = retain indefinitely
    retention_days: int | None = None
    rbac: dict[str, bool] = field(default_factory=dict)

    def retention(self) -> RetentionConfig | None:
        if self.retention_days is None:
            return None
        if self.retention_days == 0:
            return RetentionConfig.forever()
        return RetentionConfig.for_days(self.retention_days)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"url": self.url}
        if self.bearer_token:
            data["bearer_token"] = self.bearer_token
        if self.user_id:
            data["user_id"] = self.user_id
        if self.user_collection_key != "users":
            data["user_collection_key"] = self.user_collection_key
        if self.retention_days is not None:
            data["retention_days"] = self.retention_days
        if self.rbac:
            data["rbac"] = dict(self.rbac)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GlobalConfig":
        return cls(
            url=data.get("url", DEFAULT_STORE_URL),
            bearer_token=data.get("bearer_token"),
            user_id=data.get("user_id"),
            user_collection_key=data.get("user_collection_key", "users"),
            retention_days=data.get("retention_days"),
            rbac={str(k): bool(v) for k, v in (data.get("rbac") or {}).items()},
        )

    def save(self) -> None:
        """Save config to file."""
        ensure_config_dir()
        with open(get_global_config_path(), "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls) -> "GlobalConfig":
        """Load config from file, or return defaults."""
        path = get_global_config_path()
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def exists(cls) -> bool:
        return get_global_config_path().exists()


def _ask_retention_days() -> int | None:
    while True:
        days = input("Retention in days (blank = 30, 0 = forever): ").strip()
        if not days:
            return None
        if days.isdigit():
            return int(days)
        print(f"Not a number of days: {days!r}", file=sys.stderr)


def init_wizard() -> GlobalConfig:
    """Interactive wizard for initial configuration."""
    print("Welcome to chatsync!")
    print("Let's set up your configuration.\n")

    url = input(f"Store URL [{DEFAULT_STORE_URL}]: ").strip()
    if not url:
        url = DEFAULT_STORE_URL

    bearer_token = input("Bearer token (optional): ").strip() or None

    user_id = input("Your user id: ").strip() or None

    print("\nMessages older than the retention window are not synchronized.")
    retention_days = _ask_retention_days()

    config = GlobalConfig(
        url=url,
        bearer_token=bearer_token,
        user_id=user_id,
        retention_days=retention_days,
    )
    config.save()

    print(f"\nConfiguration saved to {get_global_config_path()}")
    return config
