"""Tests for chain status queries."""

import json
import asyncio
import pytest
import requests
from aiohttp import web
from aiohttp import test_utils
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from upgrade_sentinel.chain import (NEW_BLOCK_SUBSCRIPTION, ChainStatusSource, ProposalStatus,
                                    parse_new_block_height, parse_rfc3339)
from upgrade_sentinel.errors import BlockNotFound, Unreachable


def _response(payload):
    response = MagicMock()
    response.json.return_value = payload
    return response


class TestChainStatusSource:
    """Test RPC and REST queries."""

    @pytest.fixture
    def source(self):
        return ChainStatusSource("http://localhost:26657/", "http://localhost:1317", timeout=5)

    @patch('requests.Session.get')
    def test_get_status(self, mock_get, source):
        mock_get.return_value = _response({
            'result': {
                'node_info': {'network': 'lumera-mainnet-1', 'version': '0.38.12'},
                'sync_info': {'latest_block_height': '424950', 'catching_up': False}
            }
        })

        status = source.get_status()

        assert status.height == 424950
        assert status.catching_up is False
        assert status.network_info == "Chain: lumera-mainnet-1 | Node: 0.38.12"
        assert mock_get.call_args[0][0] == "http://localhost:26657/status"
        assert mock_get.call_args[1]['timeout'] == 5

    @patch('requests.Session.get')
    def test_latest_height_non_numeric(self, mock_get, source):
        mock_get.return_value = _response({'result': {'sync_info': {'latest_block_height': 'null'}}})

        with pytest.raises(Unreachable):
            source.get_latest_height()

    @patch('requests.Session.get')
    def test_latest_height_timeout(self, mock_get, source):
        mock_get.side_effect = requests.exceptions.Timeout()

        with pytest.raises(Unreachable, match="Timeout"):
            source.get_latest_height()

    @patch('requests.Session.get')
    def test_latest_height_connection_error(self, mock_get, source):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(Unreachable):
            source.get_latest_height()

    @patch('requests.Session.get')
    def test_get_block_time(self, mock_get, source):
        mock_get.return_value = _response({
            'result': {'block': {'header': {'time': '2025-03-01T12:00:05.123456789Z'}}}
        })

        block_time = source.get_block_time(100)

        assert block_time == datetime(2025, 3, 1, 12, 0, 5, 123456, tzinfo=timezone.utc)
        assert mock_get.call_args[1]['params'] == {'height': 100}

    @patch('requests.Session.get')
    def test_get_block_time_pruned(self, mock_get, source):
        mock_get.return_value = _response({
            'error': {'code': -32603, 'message': 'Internal error',
                      'data': 'height 1 is not available, lowest height is 380001'}
        })

        with pytest.raises(BlockNotFound, match="lowest height"):
            source.get_block_time(1)

    @patch('requests.Session.get')
    def test_get_proposal_status(self, mock_get, source):
        mock_get.return_value = _response({'proposal': {'id': '12', 'status': 'PROPOSAL_STATUS_PASSED'}})

        assert source.get_proposal_status(12) is ProposalStatus.PASSED
        assert mock_get.call_args[0][0] == "http://localhost:1317/cosmos/gov/v1/proposals/12"

    @patch('requests.Session.get')
    def test_get_proposal_status_unknown(self, mock_get, source):
        mock_get.return_value = _response({'code': 5, 'message': 'proposal 99 doesn\'t exist'})

        assert source.get_proposal_status(99) is ProposalStatus.UNKNOWN

    def test_subscribe_requires_url(self, source):
        async def consume():
            async for _ in source.subscribe_new_blocks():
                pass

        with pytest.raises(ValueError):
            asyncio.run(consume())

    def test_probe_without_url(self, source):
        assert source.probe_event_stream() is False


class TestParsing:

    def test_proposal_status_parse(self):
        assert ProposalStatus.parse("PROPOSAL_STATUS_VOTING_PERIOD") is ProposalStatus.VOTING_PERIOD
        assert ProposalStatus.parse("PROPOSAL_STATUS_REJECTED").is_fatal
        assert ProposalStatus.parse("PROPOSAL_STATUS_FAILED").is_fatal
        assert not ProposalStatus.parse("PROPOSAL_STATUS_PASSED").is_fatal
        assert ProposalStatus.parse(None) is ProposalStatus.UNKNOWN
        assert ProposalStatus.parse("PROPOSAL_STATUS_DEPOSIT_PERIOD") is ProposalStatus.UNKNOWN

    def test_parse_rfc3339(self):
        assert parse_rfc3339("2025-03-01T12:00:00Z") == datetime(2025, 3, 1, 12, tzinfo=timezone.utc)
        assert parse_rfc3339("2025-03-01T12:00:00.5Z").microsecond == 500000

    def test_parse_new_block_height(self):
        event = {
            'jsonrpc': '2.0', 'id': 1,
            'result': {
                'query': "tm.event='NewBlock'",
                'data': {'type': 'tendermint/event/NewBlock',
                         'value': {'block': {'header': {'height': '425000'}}}}
            }
        }
        assert parse_new_block_height(json.dumps(event)) == 425000

    def test_parse_subscription_ack(self):
        assert parse_new_block_height('{"jsonrpc":"2.0","id":1,"result":{}}') is None
        assert parse_new_block_height("not json") is None


def _new_block(height):
    return {
        'jsonrpc': '2.0', 'id': 1,
        'result': {
            'query': "tm.event='NewBlock'",
            'data': {'type': 'tendermint/event/NewBlock',
                     'value': {'block': {'header': {'height': str(height)}}}}
        }
    }


def _collect_heights(handler, stream_idle_timeout=5.0):
    """Serve `handler` on /websocket and return the heights the client yields."""
    async def scenario():
        app = web.Application()
        app.router.add_get('/websocket', handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            source = ChainStatusSource("http://localhost:26657", "http://localhost:1317",
                                       ws_url=str(server.make_url('/websocket')),
                                       stream_idle_timeout=stream_idle_timeout)
            heights = []
            async for height in source.subscribe_new_blocks():
                heights.append(height)
            source.session.close()
            return heights
        finally:
            await server.close()

    return asyncio.run(scenario())


class TestEventStream:
    """Test the NewBlock subscription against a local WebSocket server."""

    def test_yields_heights_until_server_closes(self):
        requests_seen = []

        async def handler(request):
            ws = web.WebSocketResponse()
            await ws.prepare(request)
            requests_seen.append(await ws.receive_json())
            await ws.send_json({'jsonrpc': '2.0', 'id': 1, 'result': {}})
            await ws.send_json(_new_block(10))
            await ws.send_json(_new_block(11))
            await ws.close()
            return ws

        assert _collect_heights(handler) == [10, 11]
        assert requests_seen == [NEW_BLOCK_SUBSCRIPTION]

    def test_idle_stream_ends_after_timeout(self):
        async def handler(request):
            ws = web.WebSocketResponse()
            await ws.prepare(request)
            await ws.receive_json()
            await ws.send_json(_new_block(10))
            async for _ in ws:
                pass
            return ws

        assert _collect_heights(handler, stream_idle_timeout=0.2) == [10]
