# tests/test_analytics.py
"""
Unit tests for in-process analytics and settings validation.
"""
import threading

import pytest
from pydantic import ValidationError

from app.core.config import Settings
from app.services.analytics import Analytics


class TestAnalytics:
    """Test counters and derived rates."""

    def test_empty_stats(self, clock):
        stats = Analytics(clock=clock).get_stats()
        assert stats["total_payments"] == 0
        assert stats["requests_today"] == 0
        assert stats["cache_hit_rate"] == 0.0
        assert stats["avg_response_time_ms"] == 0.0
        assert stats["counters"]["payment_outcomes"] == {}

    def test_cache_hit_rate_and_latency(self, clock):
        analytics = Analytics(clock=clock)
        analytics.record_served(cache_hit=False, latency_ms=30.0)
        analytics.record_served(cache_hit=True, latency_ms=10.0)
        analytics.record_served(cache_hit=True, latency_ms=20.0)

        stats = analytics.get_stats()
        assert stats["cache_hit_rate"] == pytest.approx(2 / 3)
        assert stats["avg_response_time_ms"] == pytest.approx(20.0)

    def test_payments_and_revenue(self, clock):
        analytics = Analytics(clock=clock)
        analytics.record_payment(0.01)
        analytics.record_payment(0.01)
        analytics.record_payment_outcome("verified")
        analytics.record_payment_outcome("verified")
        analytics.record_payment_outcome("not_found")

        stats = analytics.get_stats()
        assert stats["total_payments"] == 2
        assert stats["revenue_today_usd"] == 0.02
        assert stats["counters"]["payment_outcomes"] == {"verified": 2, "not_found": 1}

    def test_daily_counters_roll_over(self, clock):
        """requests_today and revenue_today_usd reset at UTC midnight; totals do not."""
        analytics = Analytics(clock=clock)
        analytics.record_request()
        analytics.record_payment(0.01)

        clock.advance(24 * 3600)
        analytics.record_request()

        stats = analytics.get_stats()
        assert stats["requests_today"] == 1
        assert stats["revenue_today_usd"] == 0.0
        assert stats["total_payments"] == 1
        assert stats["counters"]["requests"] == 2

    def test_uptime(self, clock):
        analytics = Analytics(clock=clock)
        clock.advance(90.5)
        assert analytics.uptime_seconds() == 90

    def test_concurrent_increments(self):
        analytics = Analytics()

        def worker():
            for _ in range(1000):
                analytics.record_request()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert analytics.get_stats()["counters"]["requests"] == 8000


class TestSettings:
    """Test configuration defaults and validation."""

    def test_defaults(self, monkeypatch):
        for name in ("ENVIRONMENT", "X402_PRICE_USD", "GAS_HISTORY_BLOCKS", "RATE_LIMIT_BURST"):
            monkeypatch.delenv(name, raising=False)
        config = Settings(_env_file=None)

        assert config.X402_PRICE_USD == "0.01"
        assert config.X402_NETWORK == "base-sepolia"
        assert config.GAS_HISTORY_BLOCKS == 20
        assert config.GAS_WEIGHT_DECAY == 0.95
        assert config.GAS_PREDICTION_CACHE_TTL_SECONDS == 12.0
        assert config.RATE_LIMIT_PER_SECOND == 10.0
        assert config.RATE_LIMIT_BURST == 30

    def test_environment_aliases(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "prod")
        assert Settings(_env_file=None).ENVIRONMENT == "production"

    def test_unknown_environment_rejected(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "staging-ish")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_rpc_url_must_be_http(self, monkeypatch):
        monkeypatch.setenv("ETH_RPC_URL", "wss://eth.example")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_env_file_loaded_and_unknown_keys_ignored(self, tmp_path, monkeypatch):
        monkeypatch.delenv("X402_PRICE_USD", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("X402_PRICE_USD=0.05\nSOME_OTHER_SERVICE_TOKEN=abc\n")

        config = Settings(_env_file=str(env_file))

        assert config.X402_PRICE_USD == "0.05"
        assert not hasattr(config, "SOME_OTHER_SERVICE_TOKEN")
        assert Settings.model_config["extra"] == "ignore"
        assert Settings.model_config["case_sensitive"] is True
