"""Chain status queries against a Cosmos node's RPC, REST API and event stream."""

import re
import json
import asyncio
import logging
from enum import Enum
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp
import requests

from .errors import BlockNotFound, Unreachable

logger = logging.getLogger(__name__)

NEW_BLOCK_SUBSCRIPTION = {
    "jsonrpc": "2.0",
    "method": "subscribe",
    "params": {"query": "tm.event='NewBlock'"},
    "id": 1
}

_FRACTION_RE = re.compile(r'\.(\d+)')


class ProposalStatus(Enum):
    """Governance lifecycle of the upgrade proposal."""
    VOTING_PERIOD = "VOTING_PERIOD"
    PASSED = "PASSED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Optional[str]) -> 'ProposalStatus':
        if not raw:
            return cls.UNKNOWN
        name = str(raw).replace("PROPOSAL_STATUS_", "")
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_fatal(self) -> bool:
        return self in (ProposalStatus.REJECTED, ProposalStatus.FAILED)


@dataclass(frozen=True)
class ChainHeightSample:
    """A height observed at a point in time."""
    height: int
    observed_at: datetime


@dataclass
class ChainStatus:
    """Subset of the node's /status answer the monitor cares about."""
    height: int
    catching_up: bool
    network: str = "Unknown"
    node_version: str = "Unknown"

    @property
    def network_info(self) -> str:
        return f"Chain: {self.network} | Node: {self.node_version}"


def parse_rfc3339(value: str) -> datetime:
    """Parse a Tendermint header time (nanosecond precision, 'Z' suffix)."""
    text = value.strip().replace('Z', '+00:00')
    # fromisoformat only understands up to microseconds
    text = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_new_block_height(message: str) -> Optional[int]:
    """Extract the height from a NewBlock event; None for acks and noise."""
    try:
        data = json.loads(message)
        height = data['result']['data']['value']['block']['header']['height']
        return int(height)
    except (ValueError, KeyError, TypeError):
        return None


class ChainStatusSource:
    """Reads height, block times and proposal status from a node."""

    def __init__(self, rpc_url: str, api_url: str, ws_url: Optional[str] = None,
                 timeout: float = 10.0, stream_idle_timeout: float = 60.0):
        self.rpc_url = rpc_url.rstrip('/')
        self.api_url = api_url.rstrip('/')
        self.ws_url = ws_url
        self.timeout = timeout
        self.stream_idle_timeout = stream_idle_timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': 'Upgrade-Sentinel/1.0'
        })

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            return response.json()
        except requests.exceptions.Timeout as e:
            raise Unreachable(f"Timeout querying {url}") from e
        except requests.exceptions.RequestException as e:
            raise Unreachable(f"Cannot reach {url}: {e}") from e
        except ValueError as e:
            raise Unreachable(f"Invalid JSON from {url}") from e

    def get_status(self) -> ChainStatus:
        """Query /status for height, sync state and node info."""
        data = self._get_json(f"{self.rpc_url}/status")
        try:
            result = data['result']
            sync_info = result['sync_info']
            height = int(sync_info['latest_block_height'])
        except (KeyError, TypeError, ValueError) as e:
            raise Unreachable(f"No numeric block height in {self.rpc_url}/status") from e

        node_info = result.get('node_info') or {}
        return ChainStatus(
            height=height,
            catching_up=bool(sync_info.get('catching_up', False)),
            network=node_info.get('network') or "Unknown",
            node_version=node_info.get('version') or "Unknown"
        )

    def get_latest_height(self) -> int:
        return self.get_status().height

    def get_block_time(self, height: int) -> datetime:
        """Header time of the block at `height`."""
        data = self._get_json(f"{self.rpc_url}/block", params={'height': height})
        if data.get('error'):
            error = data['error']
            detail = error.get('data') or error.get('message') if isinstance(error, dict) else error
            raise BlockNotFound(f"Block {height} not available: {detail}")
        try:
            return parse_rfc3339(data['result']['block']['header']['time'])
        except (KeyError, TypeError, ValueError) as e:
            raise BlockNotFound(f"Block {height} has no header time") from e

    def get_proposal_status(self, proposal_id: int) -> ProposalStatus:
        data = self._get_json(f"{self.api_url}/cosmos/gov/v1/proposals/{proposal_id}")
        proposal = data.get('proposal') or {}
        return ProposalStatus.parse(proposal.get('status'))

    async def subscribe_new_blocks(self, ws_url: Optional[str] = None) -> AsyncIterator[int]:
        """Yield heights pushed by the node until the connection drops."""
        url = ws_url or self.ws_url
        if not url:
            raise ValueError("No event stream URL configured")

        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.ws_connect(url, heartbeat=30) as ws:
                    await ws.send_json(NEW_BLOCK_SUBSCRIPTION)
                    logger.info(f"Subscribed to NewBlock events at {url}")
                    while True:
                        msg = await ws.receive(timeout=self.stream_idle_timeout)
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            height = parse_new_block_height(msg.data)
                            if height is not None:
                                yield height
                        elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                                          aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            logger.warning(f"Event stream closed: {msg.type.name}")
                            return
        except asyncio.TimeoutError:
            logger.warning(f"No event from {url} within {self.stream_idle_timeout}s")
        except aiohttp.ClientError as e:
            logger.warning(f"Event stream error on {url}: {e}")

    async def _probe(self, url: str) -> bool:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.ws_connect(url):
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Cannot connect to event stream {url}: {e}")
            return False

    def probe_event_stream(self, ws_url: Optional[str] = None) -> bool:
        """Open and close a WebSocket connection to check the endpoint."""
        url = ws_url or self.ws_url
        if not url:
            return False
        return asyncio.run(self._probe(url))
