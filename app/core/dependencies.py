# app/core/dependencies.py
"""
Composition root: builds every component from settings and passes store
handles into their constructors. FastAPI endpoints receive the result via
Depends(get_services); tests swap it with app.dependency_overrides.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import requests

from app.api.models.gas import GasPrediction
from app.core.config import Settings, settings
from app.services.analytics import Analytics
from app.services.cache import ResponseCache
from app.services.gas_predictor import GasPredictor
from app.services.ledger import LedgerClient
from app.services.stores import FallbackStore, InMemoryStore, KeyValueStore, RedisStore
from app.x402.payments import USDC_ADDRESSES, PaymentVerifier, usd_to_base_units
from app.x402.pipeline import PaymentTerms, RequestPipeline
from app.x402.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
REDIS_KEY_PREFIX = "gasgw:"
RATE_STORE_MAX_ENTRIES = 100_000


@dataclass
class Services:
    pipeline: RequestPipeline
    analytics: Analytics
    data_ledger: LedgerClient
    settlement_ledger: LedgerClient
    redis_store: Optional[RedisStore] = None


def _local_or_shared(redis_store: Optional[RedisStore], max_entries: int) -> KeyValueStore:
    local = InMemoryStore(max_entries=max_entries)
    if redis_store is None:
        return local
    return FallbackStore(redis_store, local)


def build_services(config: Settings) -> Services:
    """Wire ledgers, stores, limiter, verifier, cache and predictor."""
    session = requests.Session()
    rpc_policy = dict(
        timeout=config.RPC_TIMEOUT_SECONDS,
        max_retries=config.RPC_MAX_RETRIES,
        backoff_seconds=config.RPC_BACKOFF_SECONDS,
        session=session,
    )
    data_ledger = LedgerClient([config.ETH_RPC_URL, config.ETH_RPC_FALLBACK], name="ethereum", **rpc_policy)
    settlement_ledger = LedgerClient([config.BASE_RPC_URL], name=config.X402_NETWORK, **rpc_policy)

    redis_store = None
    if config.REDIS_URL:
        redis_store = RedisStore.from_url(config.REDIS_URL, key_prefix=REDIS_KEY_PREFIX)

    # Payment records are never allowed to fall back to a local store
    payment_store = redis_store or InMemoryStore()

    pay_to = config.X402_PAY_TO_ADDRESS
    if not pay_to:
        logger.warning("X402_PAY_TO_ADDRESS not configured - using placeholder")
        pay_to = ZERO_ADDRESS
    asset_address = config.X402_USDC_ADDRESS or USDC_ADDRESSES.get(
        config.X402_NETWORK, USDC_ADDRESSES["base-sepolia"]
    )

    verifier = PaymentVerifier(
        ledger=settlement_ledger,
        store=payment_store,
        recipient=pay_to,
        asset_address=asset_address,
        required_amount=usd_to_base_units(config.X402_PRICE_USD),
        retention_seconds=config.PAYMENT_RECORD_RETENTION_SECONDS,
    )
    rate_limiter = RateLimiter(
        store=_local_or_shared(redis_store, RATE_STORE_MAX_ENTRIES),
        refill_rate=config.RATE_LIMIT_PER_SECOND,
        capacity=config.RATE_LIMIT_BURST,
    )
    cache = ResponseCache(_local_or_shared(redis_store, config.CACHE_MAX_ENTRIES), GasPrediction)
    predictor = GasPredictor(
        ledger=data_ledger,
        history_blocks=config.GAS_HISTORY_BLOCKS,
        decay=config.GAS_WEIGHT_DECAY,
        priority_fee_gwei=config.GAS_PRIORITY_FEE_GWEI,
        max_fee_multiplier=config.GAS_MAX_FEE_MULTIPLIER,
    )
    analytics = Analytics()

    terms = PaymentTerms(
        price_usd=config.X402_PRICE_USD,
        network=config.X402_NETWORK,
        asset_address=asset_address,
        recipient=pay_to,
        facilitator_url=config.X402_FACILITATOR_URL,
        enabled=config.X402_ENABLED,
    )
    pipeline = RequestPipeline(
        rate_limiter=rate_limiter,
        verifier=verifier,
        cache=cache,
        predictor=predictor,
        analytics=analytics,
        terms=terms,
        cache_ttl=config.GAS_PREDICTION_CACHE_TTL_SECONDS,
    )

    logger.info(
        f"Gateway configured for {config.ENVIRONMENT}: price ${config.X402_PRICE_USD} USDC "
        f"on {config.X402_NETWORK}, store={'redis' if redis_store else 'memory'}"
    )
    return Services(
        pipeline=pipeline,
        analytics=analytics,
        data_ledger=data_ledger,
        settlement_ledger=settlement_ledger,
        redis_store=redis_store,
    )


@lru_cache()
def get_services() -> Services:
    return build_services(settings)
