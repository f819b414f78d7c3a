"""Configuration management for Upgrade Sentinel."""

import os
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from dataclasses import dataclass, field, fields, replace

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

FAST_MODES = ("websocket", "polling")
DEFAULT_MILESTONES = (75, 90, 95, 99)


@dataclass
class EndpointConfig:
    """Chain endpoints queried by the monitor."""
    rpc_url: str = "http://localhost:26657"
    api_url: str = "http://localhost:1317"
    ws_url: Optional[str] = None


@dataclass
class TimingConfig:
    """Polling cadence and reporting intervals (seconds unless noted)."""
    poll_interval: float = 10.0
    fast_poll_interval: float = 3.0
    fast_threshold: int = 50  # blocks remaining
    fast_mode: str = "websocket"
    progress_interval: int = 300
    report_interval: int = 60
    health_interval: int = 600
    default_block_time: float = 6.0


@dataclass
class NotificationConfig:
    """Notification configuration."""
    discord_webhook: Optional[str] = None
    notify_url: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


@dataclass(frozen=True)
class MonitorConfig:
    """Immutable input for a single upgrade run."""
    daemon_name: str
    target_height: int
    new_binary_path: Path
    install_dir: Path = field(default_factory=lambda: Path.home() / "go" / "bin")
    rpc_url: str = "http://localhost:26657"
    api_url: str = "http://localhost:1317"
    ws_url: Optional[str] = None
    proposal_id: Optional[int] = None
    poll_interval: float = 10.0
    fast_poll_interval: float = 3.0
    fast_threshold: int = 50
    fast_mode: str = "websocket"
    progress_interval: int = 300
    report_interval: int = 60
    health_interval: int = 600
    default_block_time: float = 6.0
    block_time_window: int = 100
    milestones: Tuple[int, ...] = DEFAULT_MILESTONES
    restart: bool = True
    restart_on_copy_failure: bool = True
    use_sudo: bool = True
    request_timeout: float = 10.0
    stream_idle_timeout: float = 60.0
    min_disk_free_gb: float = 1.0
    discord_webhook: Optional[str] = None
    notify_url: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @property
    def service_name(self) -> str:
        return f"{self.daemon_name}.service"

    @property
    def install_path(self) -> Path:
        return self.install_dir / self.daemon_name

    @property
    def event_stream_url(self) -> Optional[str]:
        """WebSocket endpoint, or None when fast mode polls instead."""
        if self.fast_mode != "websocket":
            return None
        return self.ws_url or derive_ws_url(self.rpc_url)

    def validate(self):
        """Check invariants that do not need the filesystem or network."""
        errors = []

        if not self.daemon_name:
            errors.append("Binary name must not be empty")
        if self.target_height <= 0:
            errors.append(f"Target block must be positive, got {self.target_height}")
        if self.fast_mode not in FAST_MODES:
            errors.append(f"Invalid fast mode: {self.fast_mode} (must be one of {', '.join(FAST_MODES)})")
        if self.poll_interval <= 0 or self.fast_poll_interval <= 0:
            errors.append("Poll intervals must be positive")
        for name in ("fast_threshold", "progress_interval", "report_interval", "health_interval"):
            if getattr(self, name) < 0:
                errors.append(f"{name.replace('_', ' ').capitalize()} must not be negative")
        if self.default_block_time <= 0:
            errors.append("Default block time must be positive")

        if errors:
            for error in errors:
                logger.error(error)
            raise ConfigError("; ".join(errors))


def derive_ws_url(rpc_url: str) -> str:
    """Map a Tendermint RPC URL to its /websocket endpoint."""
    url = rpc_url.rstrip('/')
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):] + "/websocket"
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):] + "/websocket"
    return f"ws://{url}/websocket"


def normalize_rpc_url(rpc_url: str) -> str:
    """Accept a bare host:port the way node operators often type it."""
    url = rpc_url.rstrip('/')
    if "://" not in url:
        return f"http://{url}"
    return url


def read_binary_version(binary_path: Path, timeout: float = 10.0) -> Optional[str]:
    """Run `<binary> version` and return its combined output, or None."""
    try:
        result = subprocess.run(
            [str(binary_path), 'version'],
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.error(f"Failed to read version of {binary_path}: {e}")
        return None

    output = "\n".join(part.strip() for part in (result.stdout, result.stderr) if part.strip())
    if result.returncode != 0:
        logger.warning(f"{binary_path} version exited with code {result.returncode}")
    return output or None


class Settings:
    """Layered defaults for the CLI: environment first, then the YAML file."""

    DEFAULT_CONFIG_PATH = Path.home() / ".upgrade-sentinel" / "config.yaml"
    DEFAULT_ENV_PATH = Path.home() / ".upgrade-sentinel" / ".env"

    # (yaml section, yaml key, environment variable, settings group)
    YAML_KEYS = [
        ('endpoints', 'rpc_url', 'RPC_URL', 'endpoints'),
        ('endpoints', 'api_url', 'API_URL', 'endpoints'),
        ('endpoints', 'ws_url', 'WS_URL', 'endpoints'),
        ('monitor', 'poll_interval', 'POLL_INTERVAL', 'timing'),
        ('monitor', 'fast_poll_interval', 'FAST_POLL_INTERVAL', 'timing'),
        ('monitor', 'fast_threshold', 'FAST_THRESHOLD', 'timing'),
        ('monitor', 'fast_mode', 'FAST_MODE', 'timing'),
        ('monitor', 'progress_interval', 'PROGRESS_INTERVAL', 'timing'),
        ('monitor', 'report_interval', 'REPORT_INTERVAL', 'timing'),
        ('monitor', 'health_interval', 'HEALTH_INTERVAL', 'timing'),
        ('monitor', 'default_block_time', 'DEFAULT_BLOCK_TIME', 'timing'),
        ('notifications', 'discord_webhook', 'DISCORD_WEBHOOK', 'notifications'),
        ('notifications', 'notify_url', 'NOTIFY_URL', 'notifications'),
        ('notifications', 'telegram_bot_token', 'TG_BOT_TOKEN', 'notifications'),
        ('notifications', 'telegram_chat_id', 'TG_CHAT_ID', 'notifications'),
    ]

    def __init__(self, config_path: Optional[Path] = None, env_path: Optional[Path] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self.env_path = env_path or self.DEFAULT_ENV_PATH

        if self.env_path.exists():
            load_dotenv(self.env_path)

        self.endpoints = EndpointConfig(
            rpc_url=os.getenv("RPC_URL", "http://localhost:26657"),
            api_url=os.getenv("API_URL", "http://localhost:1317"),
            ws_url=os.getenv("WS_URL") or None
        )

        self.timing = TimingConfig(
            poll_interval=float(os.getenv("POLL_INTERVAL", "10")),
            fast_poll_interval=float(os.getenv("FAST_POLL_INTERVAL", "3")),
            fast_threshold=int(os.getenv("FAST_THRESHOLD", "50")),
            fast_mode=os.getenv("FAST_MODE", "websocket"),
            progress_interval=int(os.getenv("PROGRESS_INTERVAL", "300")),
            report_interval=int(os.getenv("REPORT_INTERVAL", "60")),
            health_interval=int(os.getenv("HEALTH_INTERVAL", "600")),
            default_block_time=float(os.getenv("DEFAULT_BLOCK_TIME", "6.0"))
        )

        self.notifications = NotificationConfig(
            discord_webhook=os.getenv("DISCORD_WEBHOOK"),
            notify_url=os.getenv("NOTIFY_URL"),
            telegram_bot_token=os.getenv("TG_BOT_TOKEN"),
            telegram_chat_id=os.getenv("TG_CHAT_ID")
        )

        self.install_path = Path(os.getenv("INSTALL_PATH", Path.home() / "go" / "bin"))
        self.use_sudo = os.getenv("USE_SUDO", "true").lower() not in ("0", "false", "no")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        log_file = os.getenv("LOG_FILE")
        self.log_file = Path(log_file) if log_file else None

        if self.config_path.exists():
            self.load_yaml_config()

    def load_yaml_config(self):
        """Load configuration from YAML file."""
        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f) or {}

            # Environment wins over the file
            for section, key, env_var, group in self.YAML_KEYS:
                section_data = data.get(section) or {}
                if key in section_data and not os.getenv(env_var):
                    setattr(getattr(self, group), key, section_data[key])

            upgrade_data = data.get('upgrade') or {}
            if 'install_path' in upgrade_data and not os.getenv("INSTALL_PATH"):
                self.install_path = Path(upgrade_data['install_path']).expanduser()
            if 'use_sudo' in upgrade_data and not os.getenv("USE_SUDO"):
                self.use_sudo = bool(upgrade_data['use_sudo'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML config: {e}")

    def monitor_config(self, daemon_name: str, target_height: int, new_binary_path: Path,
                       **overrides: Any) -> MonitorConfig:
        """Build a MonitorConfig; keyword overrides set to None are ignored."""
        base = MonitorConfig(
            daemon_name=daemon_name,
            target_height=target_height,
            new_binary_path=Path(new_binary_path),
            install_dir=self.install_path,
            rpc_url=normalize_rpc_url(self.endpoints.rpc_url),
            api_url=self.endpoints.api_url.rstrip('/'),
            ws_url=self.endpoints.ws_url,
            poll_interval=float(self.timing.poll_interval),
            fast_poll_interval=float(self.timing.fast_poll_interval),
            fast_threshold=int(self.timing.fast_threshold),
            fast_mode=self.timing.fast_mode,
            progress_interval=int(self.timing.progress_interval),
            report_interval=int(self.timing.report_interval),
            health_interval=int(self.timing.health_interval),
            default_block_time=float(self.timing.default_block_time),
            use_sudo=self.use_sudo,
            discord_webhook=self.notifications.discord_webhook,
            notify_url=self.notifications.notify_url,
            telegram_bot_token=self.notifications.telegram_bot_token,
            telegram_chat_id=self.notifications.telegram_chat_id,
        )

        known = {f.name for f in fields(MonitorConfig)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")

        changes = {k: v for k, v in overrides.items() if v is not None}
        if 'rpc_url' in changes:
            changes['rpc_url'] = normalize_rpc_url(changes['rpc_url'])
        if 'install_dir' in changes:
            changes['install_dir'] = Path(changes['install_dir']).expanduser()
        config = replace(base, **changes)
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary (secrets masked)."""
        return {
            'endpoints': {
                'rpc_url': self.endpoints.rpc_url,
                'api_url': self.endpoints.api_url,
                'ws_url': self.endpoints.ws_url,
            },
            'monitor': {
                'poll_interval': self.timing.poll_interval,
                'fast_poll_interval': self.timing.fast_poll_interval,
                'fast_threshold': self.timing.fast_threshold,
                'fast_mode': self.timing.fast_mode,
                'progress_interval': self.timing.progress_interval,
                'report_interval': self.timing.report_interval,
                'health_interval': self.timing.health_interval,
                'default_block_time': self.timing.default_block_time,
            },
            'notifications': {
                'discord_webhook': bool(self.notifications.discord_webhook),
                'notify_url': bool(self.notifications.notify_url),
                'telegram': bool(self.notifications.telegram_bot_token and self.notifications.telegram_chat_id),
            },
            'upgrade': {
                'install_path': str(self.install_path),
                'use_sudo': self.use_sudo,
            },
            'log_level': self.log_level,
        }
