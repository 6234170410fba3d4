# app/services/ledger.py
"""
JSON-RPC client for EVM chains.

Used for both chains the gateway talks to:
- the data-source chain (Ethereum mainnet) for recent block headers
- the settlement chain (Base Sepolia) for payment transactions

Each call is bounded by a request timeout. Failed calls are retried a small
number of times with exponential backoff, cycling through the configured
endpoints in order (primary first, then fallbacks). When the retry budget is
exhausted LedgerUnavailableError is raised.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class LedgerUnavailableError(Exception):
    """Raised when no endpoint answered within the retry budget."""


class LedgerRPCError(Exception):
    """Raised when an endpoint answered with a JSON-RPC error or a malformed body."""


@dataclass(frozen=True)
class BlockHeader:
    number: int
    base_fee_wei: int
    timestamp: int


@dataclass(frozen=True)
class TokenTransfer:
    """An ERC-20 Transfer event emitted by a transaction."""
    asset: str
    sender: str
    recipient: str
    amount: int


@dataclass(frozen=True)
class LedgerTransaction:
    tx_hash: str
    sender: str
    confirmed: bool
    succeeded: bool = False
    block_number: Optional[int] = None
    transfers: List[TokenTransfer] = field(default_factory=list)


def hex_to_int(value: Optional[str]) -> int:
    """Convert a JSON-RPC hex quantity to int (None -> 0)."""
    if value is None:
        return 0
    return int(value, 16)


def topic_to_address(topic: str) -> str:
    """Extract the 20-byte address from a 32-byte indexed topic."""
    return "0x" + topic[-40:].lower()


def parse_transfer_logs(logs: Sequence[Dict[str, Any]]) -> List[TokenTransfer]:
    """
    Extract ERC-20 transfers from receipt logs.

    Args:
        logs: The receipt's "logs" array

    Returns:
        TokenTransfer entries in log order
    """
    transfers = []
    for log in logs:
        topics = log.get("topics") or []
        if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
            continue
        data = log.get("data") or "0x0"
        transfers.append(TokenTransfer(
            asset=(log.get("address") or "").lower(),
            sender=topic_to_address(topics[1]),
            recipient=topic_to_address(topics[2]),
            amount=hex_to_int(data if data != "0x" else "0x0"),
        ))
    return transfers


class LedgerClient:
    """Thin JSON-RPC client with timeout, retry and endpoint fallback."""

    def __init__(
        self,
        endpoints: Sequence[str],
        timeout: float = 3.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.25,
        session: Optional[requests.Session] = None,
        name: str = "ledger"
    ):
        """
        Initialize the client.

        Args:
            endpoints: RPC URLs in fallback order. Empty/None entries are ignored.
            timeout: Per-request timeout in seconds
            max_retries: Rounds over all endpoints before giving up
            backoff_seconds: Base delay between rounds, doubled each round
            session: Optional requests session (shared connection pool)
            name: Label used in log messages
        """
        self.endpoints = [url for url in endpoints if url]
        if not self.endpoints:
            raise ValueError("LedgerClient needs at least one RPC endpoint")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.name = name
        self._session = session or requests.Session()
        self._request_id = 0

    def _post(self, endpoint: str, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }
        # Closing the response hands the connection back to the pool
        with self._session.post(endpoint, json=payload, timeout=self.timeout) as response:
            response.raise_for_status()
            result = response.json()

        if "error" in result:
            raise LedgerRPCError(f"RPC error: {result['error']}")
        if "result" not in result:
            raise LedgerRPCError("Invalid RPC response: missing 'result' field")
        return result["result"]

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Perform a JSON-RPC call with retries and endpoint fallback.

        Raises:
            LedgerUnavailableError: If every attempt failed
        """
        params = params or []
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            for endpoint in self.endpoints:
                try:
                    return self._post(endpoint, method, params)
                except (RequestException, LedgerRPCError, ValueError) as e:
                    last_error = e
                    logger.warning(
                        f"{self.name}: {method} failed on {endpoint} "
                        f"(attempt {attempt + 1}/{self.max_retries}): {e}"
                    )
            if attempt < self.max_retries - 1:
                time.sleep(self.backoff_seconds * (2 ** attempt))

        logger.error(f"{self.name}: {method} failed after {self.max_retries} attempts: {last_error}")
        raise LedgerUnavailableError(f"{self.name} RPC unavailable: {last_error}")

    def get_block_number(self) -> int:
        return hex_to_int(self.call("eth_blockNumber"))

    def get_block_header(self, number: int) -> Optional[BlockHeader]:
        """Fetch a block header, or None if the block is unknown or has no base fee."""
        block = self.call("eth_getBlockByNumber", [hex(number), False])
        if not block or block.get("baseFeePerGas") is None:
            return None
        return BlockHeader(
            number=hex_to_int(block.get("number")),
            base_fee_wei=hex_to_int(block["baseFeePerGas"]),
            timestamp=hex_to_int(block.get("timestamp")),
        )

    def get_recent_block_headers(self, n: int) -> List[BlockHeader]:
        """
        Fetch up to n of the most recent block headers, oldest first.

        Blocks are fetched newest first. Unknown blocks and blocks without a
        base fee are skipped. The first block whose fetch exhausts the retry
        budget ends the walk, and the newer headers collected so far are
        returned.

        Raises:
            LedgerUnavailableError: If the chain head cannot be determined, or
                the newest block cannot be fetched
        """
        latest = self.get_block_number()
        start = max(0, latest - n + 1)

        headers = []
        for number in range(latest, start - 1, -1):
            try:
                header = self.get_block_header(number)
            except LedgerUnavailableError as e:
                if not headers:
                    raise
                logger.warning(f"{self.name}: stopping history at block {number}: {e}")
                break
            if header is None:
                logger.warning(f"{self.name}: block {number} not found or has no base fee")
                continue
            headers.append(header)

        headers.reverse()
        return headers

    def get_transaction(self, tx_hash: str) -> Optional[LedgerTransaction]:
        """
        Look up a transaction and its receipt.

        Returns:
            None if the chain does not know the transaction. A transaction
            without a receipt is returned with confirmed=False. Transfers are
            only reported for successful (status 1) receipts.

        Raises:
            LedgerUnavailableError: If the RPC endpoint is unreachable
        """
        receipt = self.call("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            tx = self.call("eth_getTransactionByHash", [tx_hash])
            if tx is None:
                return None
            return LedgerTransaction(
                tx_hash=tx_hash,
                sender=(tx.get("from") or "").lower(),
                confirmed=False,
            )

        succeeded = hex_to_int(receipt.get("status")) == 1
        transfers = parse_transfer_logs(receipt.get("logs") or []) if succeeded else []

        return LedgerTransaction(
            tx_hash=tx_hash,
            sender=(receipt.get("from") or "").lower(),
            confirmed=True,
            succeeded=succeeded,
            block_number=hex_to_int(receipt.get("blockNumber")),
            transfers=transfers,
        )

    def ping(self) -> bool:
        """Return True if the chain head can be read."""
        try:
            self.get_block_number()
            return True
        except LedgerUnavailableError:
            return False
