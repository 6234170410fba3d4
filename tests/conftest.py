# tests/conftest.py
"""
Shared fixtures: a controllable clock, an in-memory ledger and an audit log
redirected to a temporary directory.
"""
import threading
from typing import Dict, List, Optional

import pytest

from app.api.models.gas import GasPrediction
from app.core.config import settings
from app.core.dependencies import Services
from app.services.analytics import Analytics
from app.services.cache import ResponseCache
from app.services.gas_predictor import GasPredictor
from app.services.ledger import BlockHeader, LedgerTransaction, LedgerUnavailableError, TokenTransfer
from app.services.stores import InMemoryStore
from app.x402.payments import PaymentVerifier, usd_to_base_units
from app.x402.pipeline import PaymentTerms, RequestPipeline
from app.x402.ratelimit import RateLimiter

RECIPIENT = "0x1111111111111111111111111111111111111111"
PAYER = "0x2222222222222222222222222222222222222222"
OTHER = "0x3333333333333333333333333333333333333333"
USDC = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"


def tx_hash(n: int) -> str:
    """Deterministic 32-byte transaction hash."""
    return "0x" + f"{n:064x}"


def usdc_payment(
    n: int,
    amount: int = 10_000,
    recipient: str = RECIPIENT,
    asset: str = USDC,
    confirmed: bool = True
) -> LedgerTransaction:
    return LedgerTransaction(
        tx_hash=tx_hash(n),
        sender=PAYER,
        confirmed=confirmed,
        succeeded=confirmed,
        block_number=100 if confirmed else None,
        transfers=[TokenTransfer(asset=asset, sender=PAYER, recipient=recipient, amount=amount)] if confirmed else [],
    )


def headers_from_gwei(fees_gwei: List[float], first_block: int = 1000) -> List[BlockHeader]:
    return [
        BlockHeader(number=first_block + i, base_fee_wei=int(fee * 10 ** 9), timestamp=1_700_000_000 + 12 * i)
        for i, fee in enumerate(fees_gwei)
    ]


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class FakeLedger:
    """Stands in for LedgerClient on both chains."""

    def __init__(self, headers: Optional[List[BlockHeader]] = None):
        self.headers = headers or []
        self.transactions: Dict[str, LedgerTransaction] = {}
        self.unavailable = False
        self.header_calls = 0
        self.transaction_calls = 0

    def add(self, transaction: LedgerTransaction) -> None:
        self.transactions[transaction.tx_hash] = transaction

    def get_recent_block_headers(self, n: int) -> List[BlockHeader]:
        self.header_calls += 1
        if self.unavailable:
            raise LedgerUnavailableError("ledger down")
        return list(self.headers[-n:])

    def get_transaction(self, tx_hash: str) -> Optional[LedgerTransaction]:
        self.transaction_calls += 1
        if self.unavailable:
            raise LedgerUnavailableError("ledger down")
        return self.transactions.get(tx_hash)

    def ping(self) -> bool:
        return not self.unavailable


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Keep audit events out of the working directory."""
    path = tmp_path / "audit" / "x402_audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))
    monkeypatch.setattr(settings, "X402_AUDIT_ENABLED", True)
    return path


def make_services(
    data_ledger: FakeLedger,
    settlement_ledger: FakeLedger,
    clock: Optional[FakeClock] = None,
    enabled: bool = True,
    capacity: int = 30,
    facilitator_url: Optional[str] = None,
    price_usd: str = "0.01"
):
    """Wire the gateway from in-memory parts, mirroring build_services()."""
    clock = clock or FakeClock()
    verifier = PaymentVerifier(
        ledger=settlement_ledger,
        store=InMemoryStore(clock=clock),
        recipient=RECIPIENT,
        asset_address=USDC,
        required_amount=usd_to_base_units(price_usd),
        clock=clock,
    )
    analytics = Analytics(clock=clock)
    pipeline = RequestPipeline(
        rate_limiter=RateLimiter(InMemoryStore(clock=clock), refill_rate=10, capacity=capacity, clock=clock),
        verifier=verifier,
        cache=ResponseCache(InMemoryStore(clock=clock), GasPrediction, clock=clock),
        predictor=GasPredictor(data_ledger, history_blocks=20),
        analytics=analytics,
        terms=PaymentTerms(
            price_usd=price_usd,
            network="base-sepolia",
            asset_address=USDC,
            recipient=RECIPIENT,
            facilitator_url=facilitator_url,
            enabled=enabled,
        ),
        cache_ttl=12.0,
    )
    return Services(
        pipeline=pipeline,
        analytics=analytics,
        data_ledger=data_ledger,
        settlement_ledger=settlement_ledger,
    )
