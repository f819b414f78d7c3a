"""Notification system for Discord, Telegram and generic webhooks."""

import socket
import logging
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import requests

from . import metrics

logger = logging.getLogger(__name__)


class EventKind(Enum):
    START = "START"
    FAST_MODE_ENTERED = "FAST_MODE_ENTERED"
    UPGRADING = "UPGRADING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WARNING = "WARNING"
    PROGRESS = "PROGRESS"
    MILESTONE = "MILESTONE"


# (embed color, title)
EMBED_STYLES = {
    EventKind.START: (3447003, "🔵 UPGRADE MONITOR STARTED"),
    EventKind.FAST_MODE_ENTERED: (15105570, "⚡ FAST MODE ACTIVATED"),
    EventKind.UPGRADING: (16776960, "🟡 UPGRADE IN PROGRESS"),
    EventKind.SUCCESS: (3066993, "🟢 UPGRADE COMPLETED"),
    EventKind.FAILURE: (15158332, "🔴 UPGRADE FAILED"),
    EventKind.WARNING: (15844367, "🟠 SYSTEM WARNING"),
    EventKind.PROGRESS: (5793266, "📊 PROGRESS REPORT"),
    EventKind.MILESTONE: (9936031, "🎯 MILESTONE ACHIEVED"),
}


@dataclass
class StartInfo:
    daemon: str
    target_height: int
    current_height: int
    current_version: str
    new_version: str
    network: str
    rpc_url: str
    ws_url: Optional[str] = None
    proposal_id: Optional[int] = None


@dataclass
class ProgressInfo:
    current_height: int
    target_height: int
    remaining: int
    progress_percent: float
    seconds_per_block: float
    eta: str
    runtime: str


@dataclass
class SuccessInfo:
    daemon: str
    from_version: str
    to_version: str
    target_height: int
    triggered_at: Optional[int]
    runtime: str
    restarted: bool = True


@dataclass
class FailureInfo:
    reason: str
    target_height: int
    runtime: str
    current_height: Optional[int] = None
    manual_intervention: bool = False


@dataclass
class Notice:
    """Free-form message used by fast mode, upgrading, warning and milestone events."""
    message: str
    details: str = ""


Payload = Union[StartInfo, ProgressInfo, SuccessInfo, FailureInfo, Notice]

PAYLOAD_TYPES = {
    EventKind.START: StartInfo,
    EventKind.FAST_MODE_ENTERED: Notice,
    EventKind.UPGRADING: Notice,
    EventKind.SUCCESS: SuccessInfo,
    EventKind.FAILURE: FailureInfo,
    EventKind.WARNING: Notice,
    EventKind.PROGRESS: ProgressInfo,
    EventKind.MILESTONE: Notice,
}


@dataclass
class NotificationEvent:
    kind: EventKind
    payload: Payload
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        expected = PAYLOAD_TYPES[self.kind]
        if not isinstance(self.payload, expected):
            raise TypeError(f"{self.kind.value} events carry {expected.__name__}, "
                            f"got {type(self.payload).__name__}")


def _field(name: str, value: Any, inline: bool = True) -> Dict[str, Any]:
    return {"name": name, "value": str(value) if value not in (None, "") else "N/A", "inline": inline}


def _build_fields(event: NotificationEvent) -> List[Dict[str, Any]]:
    p = event.payload
    if event.kind is EventKind.START:
        fields = [
            _field("🔧 Daemon", p.daemon),
            _field("🎯 Target Block Height", p.target_height),
            _field("📊 Current Block Height", p.current_height),
            _field("📦 Current Version", p.current_version),
            _field("🆕 Target Version", p.new_version),
            _field("🗳️ Governance Proposal", p.proposal_id),
            _field("🌐 RPC", p.rpc_url, inline=False),
        ]
        if p.ws_url:
            fields.append(_field("🌐 WebSocket", p.ws_url, inline=False))
        fields.append(_field("🧱 Network", p.network, inline=False))
        return fields

    if event.kind is EventKind.PROGRESS:
        return [
            _field("📊 Current Block Height", p.current_height),
            _field("🎯 Target Block Height", p.target_height),
            _field("⏳ Remaining Blocks", p.remaining),
            _field("📈 Completion Progress", f"{p.progress_percent:.1f}%"),
            _field("⏱️ Average Block Time", f"{p.seconds_per_block:.2f}s"),
            _field("🕐 Estimated Time to Completion", p.eta),
        ]

    if event.kind is EventKind.SUCCESS:
        return [
            _field("📦 Version Upgrade", f"{p.from_version} → {p.to_version}", inline=False),
            _field("🔧 Daemon", p.daemon),
            _field("🎯 Target Block Height", p.target_height),
            _field("✅ Triggered At Block", p.triggered_at),
            _field("⏱️ Runtime", p.runtime),
            _field("▶️ Service", "Restarted" if p.restarted else "STOPPED (manual start)"),
        ]

    if event.kind is EventKind.FAILURE:
        return [
            _field("🔥 Error Details", p.reason, inline=False),
            _field("📊 Current Block Height", p.current_height),
            _field("🎯 Target Block Height", p.target_height),
            _field("⏱️ Operation Runtime", p.runtime),
            _field("🛠️ Manual Intervention", "REQUIRED" if p.manual_intervention else "Not required"),
        ]

    if p.details:
        return [_field("Details", p.details, inline=False)]
    return []


def _describe(event: NotificationEvent) -> str:
    p = event.payload
    if event.kind is EventKind.START:
        return "Upgrade monitoring initialized and tracking block progression."
    if event.kind is EventKind.PROGRESS:
        return "Routine monitoring update."
    if event.kind is EventKind.SUCCESS:
        if p.restarted:
            return "Upgrade sequence completed successfully."
        return ("The node binary has been swapped. **The service is currently STOPPED** "
                "for manual verification.")
    if event.kind is EventKind.FAILURE:
        return "The upgrade process encountered a critical error and requires attention."
    return p.message


def build_discord_payload(event: NotificationEvent, hostname: str) -> Dict[str, Any]:
    """Render an event as a Discord webhook document."""
    color, title = EMBED_STYLES[event.kind]
    if event.kind is EventKind.SUCCESS and not event.payload.restarted:
        title = "🟢 BINARY SWAPPED (STOPPED)"

    embed = {
        "title": title,
        "description": _describe(event),
        "color": color,
        "timestamp": event.timestamp.isoformat(),
        "footer": {"text": f"Server: {hostname}"},
        "fields": _build_fields(event),
    }
    return {"embeds": [embed]}


def build_text_message(event: NotificationEvent, hostname: str) -> str:
    """Plain Markdown rendering for chat channels without embeds."""
    embed = build_discord_payload(event, hostname)["embeds"][0]
    lines = [f"*{embed['title']}*", "", embed["description"]]
    if embed["fields"]:
        lines.append("")
        lines.extend(f"{f['name']}: {f['value']}" for f in embed["fields"])
    lines.extend(["", embed["footer"]["text"]])
    return "\n".join(lines)


class NotificationManager:
    """Delivers events to the configured channels; never raises."""

    def __init__(self, discord_webhook: Optional[str] = None,
                 notify_url: Optional[str] = None,
                 telegram_bot_token: Optional[str] = None,
                 telegram_chat_id: Optional[str] = None,
                 timeout: float = 10.0,
                 hostname: Optional[str] = None):
        self.discord_webhook = discord_webhook
        self.notify_url = notify_url
        self.telegram_bot_token = telegram_bot_token
        self.telegram_chat_id = telegram_chat_id
        self.timeout = timeout
        self.hostname = hostname or socket.gethostname()

    @property
    def enabled(self) -> bool:
        return bool(self.discord_webhook or self.notify_url or
                    (self.telegram_bot_token and self.telegram_chat_id))

    def send(self, event: NotificationEvent):
        """Send an event to every configured channel."""
        try:
            payload = build_discord_payload(event, self.hostname)
        except Exception as e:
            logger.error(f"Failed to build {event.kind.value} notification: {e}")
            return

        if self.discord_webhook:
            self._post_webhook(self.discord_webhook, payload, event.kind, "discord")

        if self.notify_url:
            self._post_webhook(self.notify_url, payload, event.kind, "webhook")

        if self.telegram_bot_token and self.telegram_chat_id:
            self._send_telegram(event)

    def _post_webhook(self, url: str, payload: Dict[str, Any], kind: EventKind, channel: str):
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)

            if response.ok:
                logger.info(f"{channel} notification {kind.value} sent successfully")
                metrics.notifications_total.labels(kind=kind.value, status="sent").inc()
            else:
                logger.warning(f"{channel} notification {kind.value} failed: {response.status_code}")
                metrics.notifications_total.labels(kind=kind.value, status="failed").inc()

        except Exception as e:
            logger.error(f"Failed to send {channel} notification: {e}")
            metrics.notifications_total.labels(kind=kind.value, status="failed").inc()

    def _send_telegram(self, event: NotificationEvent):
        """Send notification to Telegram chat."""
        try:
            url = f"https://api.telegram.org/bot{self.telegram_bot_token}/sendMessage"
            payload = {
                "chat_id": self.telegram_chat_id,
                "text": build_text_message(event, self.hostname),
                "parse_mode": "Markdown",
                "disable_web_page_preview": True
            }

            response = requests.post(url, json=payload, timeout=self.timeout)

            if response.status_code == 200:
                logger.info("Telegram notification sent successfully")
            else:
                logger.warning(f"Telegram notification failed: {response.status_code}")

        except Exception as e:
            logger.error(f"Failed to send Telegram notification: {e}")

    def test_notifications(self):
        """Send a test event to every configured channel."""
        self.send(NotificationEvent(
            EventKind.WARNING,
            Notice("🧪 Upgrade Sentinel test notification. The notification system is working.")
        ))
        logger.info("Test notifications sent")
