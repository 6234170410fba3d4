# tests/test_dependencies.py
"""
Tests for wiring the gateway from settings.
"""
from unittest.mock import patch

from app.core.config import Settings
from app.core.dependencies import ZERO_ADDRESS, build_services
from app.services.stores import FallbackStore, InMemoryStore, RedisStore
from app.x402.payments import USDC_ADDRESSES


def make_settings(**overrides):
    return Settings(_env_file=None, **overrides)


class TestBuildServices:
    """Test the composition root."""

    def test_memory_only_without_redis(self):
        services = build_services(make_settings(X402_PAY_TO_ADDRESS="0x" + "11" * 20))

        assert services.redis_store is None
        assert isinstance(services.pipeline.rate_limiter._store, InMemoryStore)
        assert isinstance(services.pipeline.verifier._store, InMemoryStore)
        assert services.pipeline.verifier.required_amount == 10_000
        assert services.pipeline.verifier.asset_address == USDC_ADDRESSES["base-sepolia"].lower()
        assert services.pipeline.cache_ttl == 12.0

    def test_placeholder_recipient_when_unset(self, caplog):
        with caplog.at_level("WARNING", logger="app.core.dependencies"):
            services = build_services(make_settings(X402_PAY_TO_ADDRESS=""))

        assert services.pipeline.terms.recipient == ZERO_ADDRESS
        assert "X402_PAY_TO_ADDRESS" in caplog.text

    def test_endpoints_in_fallback_order(self):
        services = build_services(make_settings(
            ETH_RPC_URL="https://primary.example",
            ETH_RPC_FALLBACK="https://fallback.example",
        ))
        assert services.data_ledger.endpoints == ["https://primary.example", "https://fallback.example"]
        assert services.settlement_ledger.endpoints == ["https://sepolia.base.org"]

    @patch("app.core.dependencies.RedisStore.from_url")
    def test_redis_backed_stores(self, mock_from_url):
        redis_store = RedisStore(client=object(), key_prefix="gasgw:")
        mock_from_url.return_value = redis_store

        services = build_services(make_settings(REDIS_URL="redis://localhost:6379/0"))

        assert services.redis_store is redis_store
        # Payment records never fall back to process memory
        assert services.pipeline.verifier._store is redis_store
        assert isinstance(services.pipeline.rate_limiter._store, FallbackStore)
        assert isinstance(services.pipeline.cache._store, FallbackStore)
