# tests/test_ledger.py
"""
Unit tests for the JSON-RPC ledger client.
"""
from unittest.mock import MagicMock, patch

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError, Timeout

from app.services.ledger import (
    TRANSFER_TOPIC,
    LedgerClient,
    LedgerUnavailableError,
    hex_to_int,
    parse_transfer_logs,
    topic_to_address,
)

PAYER_TOPIC = "0x" + "0" * 24 + "22" * 20
RECIPIENT_TOPIC = "0x" + "0" * 24 + "11" * 20
USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


def rpc_response(result=None, error=None):
    """A context-managed response as returned by session.post()."""
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    response = MagicMock()
    response.json.return_value = body
    response.raise_for_status.return_value = None
    cm = MagicMock()
    cm.__enter__.return_value = response
    cm.__exit__.return_value = False
    return cm


def make_client(session, endpoints=("https://primary",), max_retries=3):
    return LedgerClient(list(endpoints), max_retries=max_retries, backoff_seconds=0.01, session=session)


def transfer_log(amount, asset=USDC, topics=None):
    return {
        "address": asset,
        "topics": topics or [TRANSFER_TOPIC, PAYER_TOPIC, RECIPIENT_TOPIC],
        "data": hex(amount),
    }


class TestHelpers:
    """Test hex and log decoding helpers."""

    def test_hex_to_int(self):
        assert hex_to_int("0x10") == 16
        assert hex_to_int(None) == 0

    def test_topic_to_address(self):
        assert topic_to_address(PAYER_TOPIC) == "0x" + "22" * 20

    def test_parse_transfer_logs(self):
        transfers = parse_transfer_logs([transfer_log(10_000)])
        assert len(transfers) == 1
        transfer = transfers[0]
        assert transfer.asset == USDC.lower()
        assert transfer.sender == "0x" + "22" * 20
        assert transfer.recipient == "0x" + "11" * 20
        assert transfer.amount == 10_000

    def test_parse_skips_non_transfer_events(self):
        approval = transfer_log(1, topics=["0x" + "ab" * 32, PAYER_TOPIC, RECIPIENT_TOPIC])
        short = transfer_log(1, topics=[TRANSFER_TOPIC])
        assert parse_transfer_logs([approval, short]) == []

    def test_parse_empty_data(self):
        log = transfer_log(0)
        log["data"] = "0x"
        assert parse_transfer_logs([log])[0].amount == 0


class TestLedgerClient:
    """Test retry, fallback and response decoding."""

    def test_requires_endpoint(self):
        with pytest.raises(ValueError):
            LedgerClient([None, ""])

    def test_block_number(self):
        session = MagicMock()
        session.post.return_value = rpc_response("0x1b4")
        client = make_client(session)

        assert client.get_block_number() == 436
        payload = session.post.call_args[1]["json"]
        assert payload["method"] == "eth_blockNumber"
        assert payload["jsonrpc"] == "2.0"
        assert session.post.call_args[1]["timeout"] == client.timeout

    @patch("app.services.ledger.time.sleep")
    def test_falls_back_to_secondary_endpoint(self, mock_sleep):
        session = MagicMock()
        session.post.side_effect = [RequestsConnectionError("refused"), rpc_response("0x1")]
        client = make_client(session, endpoints=("https://primary", "https://fallback"))

        assert client.get_block_number() == 1
        assert session.post.call_args_list[1][0][0] == "https://fallback"
        mock_sleep.assert_not_called()

    @patch("app.services.ledger.time.sleep")
    def test_retries_with_exponential_backoff(self, mock_sleep):
        session = MagicMock()
        session.post.side_effect = [Timeout("slow"), Timeout("slow"), rpc_response("0x2")]
        client = make_client(session)

        assert client.get_block_number() == 2
        assert [c[0][0] for c in mock_sleep.call_args_list] == [0.01, 0.02]

    @patch("app.services.ledger.time.sleep")
    def test_unavailable_after_retry_budget(self, mock_sleep):
        session = MagicMock()
        session.post.side_effect = RequestsConnectionError("refused")
        client = make_client(session, endpoints=("https://a", "https://b"), max_retries=3)

        with pytest.raises(LedgerUnavailableError):
            client.get_block_number()
        assert session.post.call_count == 6
        assert mock_sleep.call_count == 2

    @patch("app.services.ledger.time.sleep")
    def test_rpc_error_is_retried(self, mock_sleep):
        session = MagicMock()
        session.post.side_effect = [rpc_response(error={"code": -32000, "message": "busy"}), rpc_response("0x3")]
        client = make_client(session)

        assert client.get_block_number() == 3

    @patch("app.services.ledger.time.sleep")
    def test_ping(self, mock_sleep):
        session = MagicMock()
        session.post.return_value = rpc_response("0x1")
        assert make_client(session).ping() is True

        session.post.side_effect = RequestsConnectionError("refused")
        assert make_client(session, max_retries=1).ping() is False


class TestRecentBlockHeaders:
    """Test block header history fetching."""

    def _dispatch(self, latest, missing=(), unreachable=()):
        def post(url, json, timeout):
            if json["method"] == "eth_blockNumber":
                return rpc_response(hex(latest))
            number = int(json["params"][0], 16)
            if number in unreachable:
                raise Timeout("slow")
            if number in missing:
                return rpc_response(None)
            return rpc_response({
                "number": hex(number),
                "baseFeePerGas": hex(number * 10 ** 9),
                "timestamp": hex(1_700_000_000 + number),
            })
        return post

    def test_returns_last_n_oldest_first(self):
        session = MagicMock()
        session.post.side_effect = self._dispatch(latest=100)
        headers = make_client(session).get_recent_block_headers(20)

        assert [h.number for h in headers] == list(range(81, 101))
        assert headers[-1].base_fee_wei == 100 * 10 ** 9

    def test_missing_blocks_skipped(self):
        session = MagicMock()
        session.post.side_effect = self._dispatch(latest=100, missing={90, 95})
        headers = make_client(session).get_recent_block_headers(20)

        assert len(headers) == 18
        assert 90 not in [h.number for h in headers]

    def test_short_chain(self):
        session = MagicMock()
        session.post.side_effect = self._dispatch(latest=4)
        headers = make_client(session).get_recent_block_headers(20)
        assert [h.number for h in headers] == [0, 1, 2, 3, 4]

    @patch("app.services.ledger.time.sleep")
    def test_block_fetch_failures_bounded(self, mock_sleep):
        """Head lookup succeeds but every block times out: one retry budget, then failure."""
        session = MagicMock()
        session.post.side_effect = self._dispatch(latest=100, unreachable=set(range(0, 101)))
        client = make_client(session, endpoints=("https://a", "https://b"), max_retries=3)

        with pytest.raises(LedgerUnavailableError):
            client.get_recent_block_headers(20)
        # 1 head lookup + 3 rounds over 2 endpoints for the newest block
        assert session.post.call_count == 7

    @patch("app.services.ledger.time.sleep")
    def test_history_stops_at_first_unreachable_block(self, mock_sleep):
        """Newer headers fetched before the failure are returned."""
        session = MagicMock()
        session.post.side_effect = self._dispatch(latest=100, unreachable=set(range(0, 96)))
        client = make_client(session, max_retries=2)

        headers = client.get_recent_block_headers(20)

        assert [h.number for h in headers] == [96, 97, 98, 99, 100]
        # 1 head lookup + 5 headers + 2 attempts at block 95
        assert session.post.call_count == 8

    @patch("app.services.ledger.time.sleep")
    def test_head_lookup_failure_is_fatal(self, mock_sleep):
        session = MagicMock()
        session.post.side_effect = RequestsConnectionError("refused")
        with pytest.raises(LedgerUnavailableError):
            make_client(session, max_retries=1).get_recent_block_headers(20)


class TestGetTransaction:
    """Test transaction lookup."""

    def _dispatch(self, receipt=None, tx=None):
        def post(url, json, timeout):
            if json["method"] == "eth_getTransactionReceipt":
                return rpc_response(receipt)
            return rpc_response(tx)
        return post

    def test_confirmed_successful_transaction(self):
        session = MagicMock()
        session.post.side_effect = self._dispatch(receipt={
            "from": "0x" + "22" * 20,
            "status": "0x1",
            "blockNumber": "0x64",
            "logs": [transfer_log(10_000)],
        })
        tx = make_client(session).get_transaction("0x" + "01" * 32)

        assert tx.confirmed is True
        assert tx.succeeded is True
        assert tx.block_number == 100
        assert tx.transfers[0].amount == 10_000

    def test_reverted_transaction_has_no_transfers(self):
        session = MagicMock()
        session.post.side_effect = self._dispatch(receipt={
            "from": "0x" + "22" * 20,
            "status": "0x0",
            "blockNumber": "0x64",
            "logs": [transfer_log(10_000)],
        })
        tx = make_client(session).get_transaction("0x" + "01" * 32)

        assert tx.confirmed is True
        assert tx.succeeded is False
        assert tx.transfers == []

    def test_pending_transaction_unconfirmed(self):
        session = MagicMock()
        session.post.side_effect = self._dispatch(receipt=None, tx={"from": "0x" + "22" * 20})
        tx = make_client(session).get_transaction("0x" + "01" * 32)

        assert tx.confirmed is False
        assert tx.transfers == []

    def test_unknown_transaction(self):
        session = MagicMock()
        session.post.side_effect = self._dispatch(receipt=None, tx=None)
        assert make_client(session).get_transaction("0x" + "01" * 32) is None
