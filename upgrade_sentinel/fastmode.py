"""Strategies for observing the chain more closely near the target block."""

import asyncio
import logging
from contextlib import aclosing
from typing import Callable, Optional

from .chain import ChainStatusSource
from .config import MonitorConfig

logger = logging.getLogger(__name__)

HeightCallback = Callable[[int], None]


class FastModeStrategy:
    """How the monitor behaves once the remaining blocks fall below the threshold."""

    name = "base"
    uses_event_stream = False

    def __init__(self, poll_interval: float):
        self.poll_interval = poll_interval

    def describe(self) -> str:
        raise NotImplementedError

    def probe(self) -> bool:
        """Check the strategy's transport before monitoring starts."""
        return True

    def watch(self, target_height: int, on_height: HeightCallback) -> Optional[int]:
        """Block until a height >= target arrives; None means fall back to polling."""
        return None


class PollingFastMode(FastModeStrategy):
    """Keep polling, just more often."""

    name = "polling"

    def describe(self) -> str:
        return f"Monitoring frequency increased to **{self.poll_interval:g}s** intervals."


class WebSocketFastMode(FastModeStrategy):
    """Switch to the node's NewBlock push subscription."""

    name = "websocket"
    uses_event_stream = True

    def __init__(self, chain: ChainStatusSource, ws_url: str, poll_interval: float):
        super().__init__(poll_interval)
        self.chain = chain
        self.ws_url = ws_url

    def describe(self) -> str:
        return "Entering WebSocket fast mode. Monitoring each new block in real time."

    def probe(self) -> bool:
        return self.chain.probe_event_stream(self.ws_url)

    def watch(self, target_height: int, on_height: HeightCallback) -> Optional[int]:
        return asyncio.run(self._watch(target_height, on_height))

    async def _watch(self, target_height: int, on_height: HeightCallback) -> Optional[int]:
        # Leaving the block closes the generator and with it the connection
        async with aclosing(self.chain.subscribe_new_blocks(self.ws_url)) as heights:
            async for height in heights:
                on_height(height)
                if height >= target_height:
                    logger.info(f"Target block reached via event stream at {height}")
                    return height

        logger.warning("Event stream ended before the target block")
        return None


def build_fast_mode(config: MonitorConfig, chain: ChainStatusSource) -> FastModeStrategy:
    ws_url = config.event_stream_url
    if ws_url:
        return WebSocketFastMode(chain, ws_url, config.fast_poll_interval)
    return PollingFastMode(config.fast_poll_interval)
