"""Prometheus metrics for the upgrade monitor."""

import logging

from prometheus_client import Counter, Enum, Gauge, start_http_server

logger = logging.getLogger(__name__)

MONITOR_STATES = ['initializing', 'polling', 'fast_watch', 'upgrading', 'succeeded', 'failed']

block_height = Gauge('upgrade_sentinel_block_height', 'Latest observed block height')
target_height = Gauge('upgrade_sentinel_target_height', 'Upgrade target block height')
blocks_remaining = Gauge('upgrade_sentinel_blocks_remaining', 'Blocks remaining until the target')
seconds_per_block = Gauge('upgrade_sentinel_seconds_per_block', 'Estimated average block time')
height_poll_failures = Counter('upgrade_sentinel_height_poll_failures_total', 'Failed block height queries')
notifications_total = Counter('upgrade_sentinel_notifications_total', 'Notification deliveries',
                              ['kind', 'status'])
monitor_state = Enum('upgrade_sentinel_state', 'Upgrade monitor state', states=MONITOR_STATES)


def serve(port: int, host: str = '0.0.0.0'):
    """Expose /metrics on a background thread."""
    start_http_server(port, addr=host)
    logger.info(f"Metrics available at http://{host}:{port}/metrics")
