"""Tests for configuration module."""

import subprocess
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch

from upgrade_sentinel.config import (MonitorConfig, Settings, derive_ws_url,
                                     normalize_rpc_url, read_binary_version)
from upgrade_sentinel.errors import ConfigError

SETTINGS_ENV = [
    "RPC_URL", "API_URL", "WS_URL", "POLL_INTERVAL", "FAST_POLL_INTERVAL", "FAST_THRESHOLD",
    "FAST_MODE", "PROGRESS_INTERVAL", "REPORT_INTERVAL", "HEALTH_INTERVAL", "DEFAULT_BLOCK_TIME",
    "DISCORD_WEBHOOK", "NOTIFY_URL", "TG_BOT_TOKEN", "TG_CHAT_ID", "INSTALL_PATH", "USE_SUDO",
    "LOG_LEVEL", "LOG_FILE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # set-then-delete so anything load_dotenv writes is undone afterwards
    for name in SETTINGS_ENV:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def no_files(tmp_path):
    return {
        'config_path': tmp_path / "missing.yaml",
        'env_path': tmp_path / "missing.env",
    }


class TestSettings:
    """Test layered settings."""

    def test_default_initialization(self, no_files):
        settings = Settings(**no_files)

        assert settings.endpoints.rpc_url == "http://localhost:26657"
        assert settings.endpoints.api_url == "http://localhost:1317"
        assert settings.endpoints.ws_url is None
        assert settings.timing.fast_threshold == 50
        assert settings.timing.fast_mode == "websocket"
        assert settings.timing.progress_interval == 300
        assert settings.install_path == Path.home() / "go" / "bin"
        assert settings.use_sudo is True
        assert settings.log_level == "INFO"

    def test_env_override(self, monkeypatch, no_files):
        monkeypatch.setenv("RPC_URL", "http://10.0.0.5:26657")
        monkeypatch.setenv("FAST_THRESHOLD", "100")
        monkeypatch.setenv("DISCORD_WEBHOOK", "https://discord.example/hook")
        monkeypatch.setenv("USE_SUDO", "false")

        settings = Settings(**no_files)

        assert settings.endpoints.rpc_url == "http://10.0.0.5:26657"
        assert settings.timing.fast_threshold == 100
        assert settings.notifications.discord_webhook == "https://discord.example/hook"
        assert settings.use_sudo is False

    def test_dotenv_loading(self, tmp_path):
        env_path = tmp_path / ".env"
        env_path.write_text("TG_BOT_TOKEN=123:abc\nTG_CHAT_ID=-100\n")

        settings = Settings(config_path=tmp_path / "missing.yaml", env_path=env_path)

        assert settings.notifications.telegram_bot_token == "123:abc"
        assert settings.notifications.telegram_chat_id == "-100"

    def test_yaml_loading(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("""
endpoints:
  rpc_url: http://node:26657
  api_url: http://node:1317
monitor:
  poll_interval: 15
  fast_mode: polling
  milestones_ignored: true
notifications:
  notify_url: https://hooks.example/upgrade
upgrade:
  install_path: /opt/bin
  use_sudo: false
""")
        settings = Settings(config_path=config_path, env_path=tmp_path / "missing.env")

        assert settings.endpoints.rpc_url == "http://node:26657"
        assert settings.endpoints.api_url == "http://node:1317"
        assert settings.timing.poll_interval == 15
        assert settings.timing.fast_mode == "polling"
        assert settings.notifications.notify_url == "https://hooks.example/upgrade"
        assert settings.install_path == Path("/opt/bin")
        assert settings.use_sudo is False

    def test_env_wins_over_yaml(self, monkeypatch, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("endpoints:\n  rpc_url: http://from-yaml:26657\n")
        monkeypatch.setenv("RPC_URL", "http://from-env:26657")

        settings = Settings(config_path=config_path, env_path=tmp_path / "missing.env")

        assert settings.endpoints.rpc_url == "http://from-env:26657"

    def test_invalid_yaml_is_logged(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("endpoints: [unclosed\n")

        settings = Settings(config_path=config_path, env_path=tmp_path / "missing.env")

        assert settings.endpoints.rpc_url == "http://localhost:26657"

    def test_monitor_config_overrides(self, no_files):
        settings = Settings(**no_files)

        config = settings.monitor_config(
            "lumerad", 425000, Path("/root/lumerad-v2"),
            rpc_url="node.example:26657",
            install_dir="/usr/local/bin",
            fast_threshold=None,
            restart=False
        )

        assert config.daemon_name == "lumerad"
        assert config.target_height == 425000
        assert config.rpc_url == "http://node.example:26657"
        assert config.install_dir == Path("/usr/local/bin")
        assert config.install_path == Path("/usr/local/bin/lumerad")
        assert config.service_name == "lumerad.service"
        assert config.fast_threshold == 50
        assert config.restart is False

    def test_monitor_config_rejects_unknown_keys(self, no_files):
        settings = Settings(**no_files)

        with pytest.raises(ConfigError):
            settings.monitor_config("lumerad", 10, Path("/tmp/x"), bogus=1)

    def test_to_dict_masks_secrets(self, monkeypatch, no_files):
        monkeypatch.setenv("DISCORD_WEBHOOK", "https://discord.example/secret")
        data = Settings(**no_files).to_dict()

        assert data['notifications']['discord_webhook'] is True
        assert "secret" not in str(data)


class TestMonitorConfig:
    """Test MonitorConfig invariants and derived values."""

    def test_validate_target_height(self):
        config = MonitorConfig(daemon_name="gaiad", target_height=0, new_binary_path=Path("/tmp/gaiad"))

        with pytest.raises(ConfigError, match="Target block"):
            config.validate()

    def test_validate_fast_mode(self):
        config = MonitorConfig(daemon_name="gaiad", target_height=10,
                               new_binary_path=Path("/tmp/gaiad"), fast_mode="carrier-pigeon")

        with pytest.raises(ConfigError, match="fast mode"):
            config.validate()

    def test_validate_negative_interval(self):
        config = MonitorConfig(daemon_name="gaiad", target_height=10,
                               new_binary_path=Path("/tmp/gaiad"), progress_interval=-1)

        with pytest.raises(ConfigError, match="Progress interval"):
            config.validate()

    def test_event_stream_url(self):
        config = MonitorConfig(daemon_name="gaiad", target_height=10,
                               new_binary_path=Path("/tmp/gaiad"), rpc_url="https://rpc.example")

        assert config.event_stream_url == "wss://rpc.example/websocket"

        explicit = MonitorConfig(daemon_name="gaiad", target_height=10, new_binary_path=Path("/tmp/gaiad"),
                                 ws_url="ws://other:26657/websocket")
        assert explicit.event_stream_url == "ws://other:26657/websocket"

        polling = MonitorConfig(daemon_name="gaiad", target_height=10, new_binary_path=Path("/tmp/gaiad"),
                                fast_mode="polling")
        assert polling.event_stream_url is None


class TestUrlHelpers:

    @pytest.mark.parametrize("rpc_url,expected", [
        ("http://localhost:26657", "ws://localhost:26657/websocket"),
        ("https://rpc.lumera.io/", "wss://rpc.lumera.io/websocket"),
        ("127.0.0.1:26657", "ws://127.0.0.1:26657/websocket"),
    ])
    def test_derive_ws_url(self, rpc_url, expected):
        assert derive_ws_url(rpc_url) == expected

    def test_normalize_rpc_url(self):
        assert normalize_rpc_url("127.0.0.1:26657") == "http://127.0.0.1:26657"
        assert normalize_rpc_url("https://rpc.example/") == "https://rpc.example"


class TestReadBinaryVersion:

    @patch('subprocess.run')
    def test_combines_output(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="v1.2.3\n")

        assert read_binary_version(Path("/usr/local/bin/gaiad")) == "v1.2.3"
        mock_run.assert_called_once()
        assert mock_run.call_args[0][0] == ["/usr/local/bin/gaiad", "version"]

    @patch('subprocess.run')
    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("no such file")

        assert read_binary_version(Path("/nonexistent")) is None

    @patch('subprocess.run')
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="gaiad version", timeout=10)

        assert read_binary_version(Path("/usr/local/bin/gaiad")) is None

