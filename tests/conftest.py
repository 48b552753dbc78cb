"""Shared pytest configuration and fixtures."""

import os

# Keep a developer's shell configuration out of the tests
for name in ("CHATSYNC_URL", "CHATSYNC_BEARER_TOKEN", "CHATSYNC_USER_ID", "CHATSYNC_RETENTION_DAYS"):
    os.environ.pop(name, None)

pytest_plugins = ["chatsync.testing"]
