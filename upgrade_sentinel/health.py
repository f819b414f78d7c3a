"""Health checks for the managed node during monitoring."""

import logging
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List

import psutil

from .chain import ChainStatusSource
from .errors import TransientNetworkError
from .service import ServiceController

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    """Result of a node health check."""
    healthy: bool
    service_name: str
    checks: Dict[str, Any]
    timestamp: datetime
    problems: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return "; ".join(self.problems)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'service_name': self.service_name,
            'checks': self.checks,
            'timestamp': self.timestamp.isoformat(),
            'message': self.message
        }


class HealthChecker:
    """Checks that the node service runs, is synced and has disk to spare."""

    def __init__(self, service: ServiceController, chain: ChainStatusSource,
                 service_name: str, install_dir: Path, min_disk_free_gb: float = 1.0):
        self.service = service
        self.chain = chain
        self.service_name = service_name
        self.install_dir = Path(install_dir)
        self.min_disk_free_gb = min_disk_free_gb

    def check(self) -> HealthStatus:
        checks = {
            'service_running': False,
            'catching_up': None,
            'disk_free_gb': None,
        }
        problems = []

        checks['service_running'] = self.service.is_active(self.service_name)
        if not checks['service_running']:
            problems.append(f"Service **{self.service_name}** is not active")

        try:
            checks['catching_up'] = self.chain.get_status().catching_up
            if checks['catching_up']:
                problems.append("Node is currently catching up (not fully synced)")
        except TransientNetworkError as e:
            logger.error(f"Failed to check sync status: {e}")

        try:
            disk_usage = psutil.disk_usage(str(self.install_dir))
            checks['disk_free_gb'] = disk_usage.free / 1024 / 1024 / 1024
            if checks['disk_free_gb'] < self.min_disk_free_gb:
                problems.append(f"Low disk space at {self.install_dir}: {checks['disk_free_gb']:.1f}GB free")
        except Exception as e:
            logger.error(f"Failed to check disk usage: {e}")

        return HealthStatus(
            healthy=not problems,
            service_name=self.service_name,
            checks=checks,
            timestamp=datetime.now(),
            problems=problems
        )
