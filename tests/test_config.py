"""Tests for CLI configuration management."""

import yaml

from chatsync.config import DEFAULT_STORE_URL, GlobalConfig, get_config_dir, get_global_config_path, init_wizard
from chatsync.models import RetentionConfig


class TestConfigPaths:
    def test_xdg_config_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert get_config_dir() == tmp_path / "chatsync"
        assert get_global_config_path() == tmp_path / "chatsync" / "config.yaml"


class TestGlobalConfig:
    def test_defaults_when_missing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert not GlobalConfig.exists()
        config = GlobalConfig.load()
        assert config.url == DEFAULT_STORE_URL
        assert config.retention() is None

    def test_save_and_load(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        GlobalConfig(
            url="https://store.example.com",
            bearer_token="tok",
            user_id="alice",
            retention_days=7,
            rbac={"canCreateRoom": False},
        ).save()

        assert GlobalConfig.exists()
        loaded = GlobalConfig.load()
        assert loaded.url == "https://store.example.com"
        assert loaded.bearer_token == "tok"
        assert loaded.user_id == "alice"
        assert loaded.retention() == RetentionConfig.for_days(7)
        assert loaded.rbac == {"canCreateRoom": False}

    def test_file_omits_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        GlobalConfig(user_id="alice").save()

        data = yaml.safe_load(get_global_config_path().read_text())

        assert data == {"url": DEFAULT_STORE_URL, "user_id": "alice"}

    def test_zero_days_means_forever(self):
        assert GlobalConfig(retention_days=0).retention() == RetentionConfig.forever()


class TestInitWizard:
    def test_wizard_saves_answers(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        answers = iter(["", "tok", "alice", "14"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))

        config = init_wizard()

        assert config.url == DEFAULT_STORE_URL
        assert config.user_id == "alice"
        assert GlobalConfig.load().retention_days == 14

    def test_wizard_reprompts_on_bad_retention(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        answers = iter(["", "", "alice", "a week", "-3", "7"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))

        config = init_wizard()

        assert config.retention_days == 7
        assert "Not a number of days: 'a week'" in capsys.readouterr().err
