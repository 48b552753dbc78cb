"""Tests for the chatsync CLI helpers."""

import pytest

from chatsync import cli
from chatsync.config import GlobalConfig
from chatsync.models import ChatUser, Message, MessageWithUser, RetentionConfig


@pytest.fixture
def config_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    return tmp_path


class TestConfigCommand:
    def test_shows_saved_config(self, config_home, capsys):
        GlobalConfig(url="https://store.example.com", bearer_token="tok", user_id="alice", retention_days=0).save()

        cli.config()

        out = capsys.readouterr().out
        assert "Store URL: https://store.example.com" in out
        assert "Bearer token: (set)" in out
        assert "User id: alice" in out
        assert "Retention: forever" in out


class TestMakeOptions:
    def test_maps_global_config(self):
        cfg = GlobalConfig(
            url="https://store.example.com",
            bearer_token="tok",
            user_id="alice",
            retention_days=7,
            rbac={"canCreateRoom": False},
        )

        opts = cli.make_options(cfg, auto_subscribe_rooms=False)

        assert opts.is_remote()
        assert opts.user_id == "alice"
        assert opts.retention == RetentionConfig.for_days(7)
        assert opts.rbac_config == {"canCreateRoom": False}
        assert opts.auto_subscribe_rooms is False

    def test_invalid_config_exits(self, capsys):
        with pytest.raises(SystemExit):
            cli.make_options(GlobalConfig(user_id=None))
        assert "user_id is required" in capsys.readouterr().err


class TestFormatEntry:
    def test_format(self):
        entry = MessageWithUser(
            Message(id="m", text="hello", user_id="alice", created_on="2024-01-02T03:04:05.000Z", is_edited=True),
            ChatUser(id="alice", name="Alice"),
        )
        assert cli.format_entry(entry) == "[2024-01-02T03:04:05] Alice: hello (edited)"

    def test_unknown_author(self):
        entry = MessageWithUser(Message(id="m", text="hi", user_id="0123456789abcdef"))
        assert cli.format_entry(entry) == "[] 01234567: hi"
