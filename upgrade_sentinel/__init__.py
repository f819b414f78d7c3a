"""Upgrade Sentinel - coordinates Cosmos node binary upgrades at a governance-scheduled block height."""

__version__ = "1.0.0"
__author__ = "Upgrade Sentinel Team"
__description__ = "Height-triggered binary swaps with Discord/Telegram reporting for Cosmos-SDK nodes"

from .config import MonitorConfig, Settings
from .chain import ChainStatusSource
from .notifications import NotificationManager
from .service import ServiceController
from .monitor import MonitorState, UpgradeMonitor

__all__ = [
    "MonitorConfig",
    "Settings",
    "ChainStatusSource",
    "NotificationManager",
    "ServiceController",
    "MonitorState",
    "UpgradeMonitor"
]
