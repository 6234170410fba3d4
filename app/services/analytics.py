# app/services/analytics.py
"""
In-process counters read by the /health and /stats endpoints.
"""
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict


class Analytics:
    """Thread-safe request, cache and payment counters."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at = clock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._payment_outcomes: Dict[str, int] = defaultdict(int)
        self._latency_ms_total = 0.0
        self._latency_count = 0
        self._day = self._today()
        self._requests_today = 0
        self._revenue_today_usd = 0.0

    def _today(self) -> date:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()

    def _roll_day(self) -> None:
        # Caller holds the lock
        today = self._today()
        if today != self._day:
            self._day = today
            self._requests_today = 0
            self._revenue_today_usd = 0.0

    def increment(self, name: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[name] += delta

    def record_request(self) -> None:
        with self._lock:
            self._roll_day()
            self._counters["requests"] += 1
            self._requests_today += 1

    def record_payment_outcome(self, status: str) -> None:
        with self._lock:
            self._payment_outcomes[status] += 1

    def record_payment(self, amount_usd: float) -> None:
        with self._lock:
            self._roll_day()
            self._counters["payments"] += 1
            self._revenue_today_usd += amount_usd

    def record_served(self, cache_hit: bool, latency_ms: float) -> None:
        with self._lock:
            self._counters["served"] += 1
            if cache_hit:
                self._counters["cache_hits"] += 1
            self._latency_ms_total += latency_ms
            self._latency_count += 1

    def uptime_seconds(self) -> int:
        return int(self._clock() - self._started_at)

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of all counters and derived rates."""
        with self._lock:
            self._roll_day()
            served = self._counters["served"]
            return {
                "total_payments": self._counters["payments"],
                "revenue_today_usd": round(self._revenue_today_usd, 6),
                "requests_today": self._requests_today,
                "cache_hit_rate": (self._counters["cache_hits"] / served) if served else 0.0,
                "avg_response_time_ms": (
                    self._latency_ms_total / self._latency_count if self._latency_count else 0.0
                ),
                "counters": {
                    **dict(self._counters),
                    "payment_outcomes": dict(self._payment_outcomes),
                },
            }
