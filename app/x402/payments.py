# app/x402/payments.py
"""
Onchain payment verification for x402 requests.

A client pays by sending the settlement token (USDC) to the gateway's
recipient address and presenting the transaction hash in the X-Payment
header. Verification:

1. Reject hashes that already authorized a request (replay prevention)
2. Look the transaction up on the settlement chain; unknown or pending
   transactions are NOT_FOUND
3. Require a transfer of the configured token of at least the price
4. Require that transfer to go to the configured recipient
5. Record the payment with an atomic put-if-absent; a concurrent
   verification of the same hash loses and sees ALREADY_CONSUMED

Verification results are never cached and every call re-queries the chain.
Any doubt (chain or store unreachable) rejects the request.
"""
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Optional

import requests
from requests.exceptions import RequestException

from app.api.models.payment import PaymentRecord
from app.services.ledger import LedgerClient, LedgerTransaction, LedgerUnavailableError, TokenTransfer
from app.services.stores import KeyValueStore, StoreUnavailableError

logger = logging.getLogger(__name__)

KEY_PREFIX = "payment:"

# USDC has 6 decimals, so $1.00 = 1,000,000 smallest units
USDC_DECIMALS = 6

# USDC contract addresses by network
USDC_ADDRESSES = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")


class VerificationStatus(Enum):
    VERIFIED = "verified"
    INVALID_PROOF = "invalid_proof"
    NOT_FOUND = "not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    WRONG_RECIPIENT = "wrong_recipient"
    ALREADY_CONSUMED = "already_consumed"
    CHAIN_UNAVAILABLE = "chain_unavailable"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    reason: str
    record: Optional[PaymentRecord] = None
    tx_hash: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return self.status is VerificationStatus.VERIFIED


def usd_to_base_units(amount_usd: str, decimals: int = USDC_DECIMALS) -> int:
    """
    Convert a USD price string ("0.01", "$1,000.50") to token base units.

    Raises:
        ValueError: If the amount cannot be parsed or is negative
    """
    cleaned = amount_usd.strip().lstrip("$").replace(",", "")
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Invalid USD amount: {amount_usd}")
    if value < 0:
        raise ValueError(f"Negative USD amount: {amount_usd}")
    return int(value * (10 ** decimals))


def normalize_tx_hash(proof: Optional[str]) -> Optional[str]:
    """Return the lowercase 0x-prefixed hash, or None if proof is not a 32-byte hex hash."""
    if not proof:
        return None
    candidate = proof.strip().lower()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    if not TX_HASH_PATTERN.match(candidate):
        return None
    return candidate


def select_transfer(transaction: LedgerTransaction, asset: str, recipient: str) -> Optional[TokenTransfer]:
    """
    Pick the transfer that pays for the request.

    Prefers a transfer of the asset to the recipient; otherwise the first
    transfer of the asset.
    """
    of_asset = [t for t in transaction.transfers if t.asset == asset]
    for transfer in of_asset:
        if transfer.recipient == recipient:
            return transfer
    return of_asset[0] if of_asset else None


class PaymentVerifier:
    """Verifies X-Payment transaction hashes against the settlement chain."""

    def __init__(
        self,
        ledger: LedgerClient,
        store: KeyValueStore,
        recipient: str,
        asset_address: str,
        required_amount: int,
        retention_seconds: float = 7 * 24 * 3600,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the verifier.

        Args:
            ledger: Client for the settlement chain
            store: Payment record store. Must not be a fallback store.
            recipient: Address payments must be sent to
            asset_address: Settlement token contract address
            required_amount: Default price in token base units
            retention_seconds: How long consumed hashes are remembered
            clock: Time source in seconds
        """
        self._ledger = ledger
        self._store = store
        self.recipient = recipient.lower()
        self.asset_address = asset_address.lower()
        self.required_amount = required_amount
        self.retention_seconds = retention_seconds
        self._clock = clock

    def is_consumed(self, tx_hash: str) -> bool:
        return self._store.get(f"{KEY_PREFIX}{tx_hash}") is not None

    def release(self, tx_hash: str) -> None:
        """Forget a consumed payment whose request could not be served."""
        try:
            self._store.delete(f"{KEY_PREFIX}{tx_hash}")
            logger.info(f"Released payment {tx_hash} after failed request")
        except StoreUnavailableError as e:
            logger.error(f"Could not release payment {tx_hash}: {e}")

    def verify(
        self,
        proof: Optional[str],
        required_amount: Optional[int] = None,
        recipient: Optional[str] = None
    ) -> VerificationResult:
        """
        Verify a payment proof.

        Args:
            proof: Transaction hash from the X-Payment header
            required_amount: Price in token base units (defaults to the configured price)
            recipient: Expected recipient (defaults to the configured address)

        Returns:
            VerificationResult; only VERIFIED authorizes the request
        """
        required = self.required_amount if required_amount is None else required_amount
        expected_recipient = (recipient or self.recipient).lower()

        tx_hash = normalize_tx_hash(proof)
        if tx_hash is None:
            return VerificationResult(VerificationStatus.INVALID_PROOF, "Invalid transaction hash")

        key = f"{KEY_PREFIX}{tx_hash}"

        try:
            if self.is_consumed(tx_hash):
                logger.warning(f"Payment replay rejected: {tx_hash}")
                return VerificationResult(
                    VerificationStatus.ALREADY_CONSUMED,
                    "Payment has already been used",
                    tx_hash=tx_hash,
                )
        except StoreUnavailableError as e:
            logger.error(f"Payment store unavailable while checking {tx_hash}: {e}")
            return VerificationResult(VerificationStatus.STORE_UNAVAILABLE, str(e), tx_hash=tx_hash)

        try:
            transaction = self._ledger.get_transaction(tx_hash)
        except LedgerUnavailableError as e:
            logger.error(f"Settlement chain unavailable while verifying {tx_hash}: {e}")
            return VerificationResult(VerificationStatus.CHAIN_UNAVAILABLE, str(e), tx_hash=tx_hash)

        if transaction is None or not transaction.confirmed:
            return VerificationResult(
                VerificationStatus.NOT_FOUND,
                "Transaction not found or not yet confirmed",
                tx_hash=tx_hash,
            )

        transfer = select_transfer(transaction, self.asset_address, expected_recipient)
        if transfer is None or transfer.amount < required:
            paid = transfer.amount if transfer else 0
            return VerificationResult(
                VerificationStatus.INSUFFICIENT_FUNDS,
                f"Insufficient payment: {paid} < {required}",
                tx_hash=tx_hash,
            )

        if transfer.recipient != expected_recipient:
            return VerificationResult(
                VerificationStatus.WRONG_RECIPIENT,
                f"Payment to wrong address: {transfer.recipient}",
                tx_hash=tx_hash,
            )

        record = PaymentRecord(
            tx_hash=tx_hash,
            amount=transfer.amount,
            sender=transfer.sender,
            recipient=transfer.recipient,
            asset=transfer.asset,
            verified_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
        )

        try:
            inserted = self._store.put_if_absent(key, record.model_dump_json(), ttl=self.retention_seconds)
        except StoreUnavailableError as e:
            logger.error(f"Payment store unavailable while recording {tx_hash}: {e}")
            return VerificationResult(VerificationStatus.STORE_UNAVAILABLE, str(e), tx_hash=tx_hash)

        if not inserted:
            logger.warning(f"Payment {tx_hash} consumed by a concurrent request")
            return VerificationResult(
                VerificationStatus.ALREADY_CONSUMED,
                "Payment has already been used",
                tx_hash=tx_hash,
            )

        logger.info(
            f"Payment verified: {transfer.amount / 10 ** USDC_DECIMALS} USDC "
            f"from {transfer.sender} (tx: {tx_hash})"
        )
        return VerificationResult(VerificationStatus.VERIFIED, "Payment verified", record=record, tx_hash=tx_hash)


def report_settlement(
    facilitator_url: Optional[str],
    record: PaymentRecord,
    session: Optional[requests.Session] = None,
    timeout: float = 5.0
) -> bool:
    """
    Report a verified payment to the facilitator. Best effort.

    Returns:
        True if the facilitator accepted the report
    """
    if not facilitator_url:
        return False

    http = session or requests
    try:
        response = http.post(
            f"{facilitator_url.rstrip('/')}/settle",
            json={
                "tx_hash": record.tx_hash,
                "payer": record.sender,
                "amount": str(record.amount),
                "verified": True,
            },
            timeout=timeout,
        )
    except RequestException as e:
        logger.warning(f"Facilitator settlement report failed: {e}")
        return False

    if 200 <= response.status_code < 300:
        logger.debug("Payment reported to facilitator successfully")
        return True

    logger.warning(f"Facilitator rejected settlement: {response.status_code}")
    return False
