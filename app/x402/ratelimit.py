# app/x402/ratelimit.py
"""
Rate limiting for the x402 payment gateway.

This module provides IP-based rate limiting to prevent abuse of the gateway.
Uses a token bucket per client IP, kept in a shared keyed store so several
gateway instances can share the same buckets.

Configuration:
- RATE_LIMIT_PER_SECOND: Sustained refill rate in tokens per second (default: 10)
- RATE_LIMIT_BURST: Bucket capacity (default: 30)

Rate limiting is applied BEFORE payment verification. It never blocks the
service on its own failure: if the store is unreachable the request is
admitted and the degradation is reported.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from pydantic import BaseModel, ValidationError

from app.services.stores import KeyValueStore, StoreUnavailableError

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:"


class RateWindowState(BaseModel):
    """Token bucket state for a single client IP."""
    tokens: float
    last_refill: float
    capacity: int
    refill_rate: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: float = 0.0
    degraded: bool = False


class RateLimiter:
    """
    Token bucket rate limiter.

    Each admit() refills the bucket for the elapsed time (capped at capacity)
    and withdraws one token. The read-modify-write is a compare-and-swap on
    the store, retried a few times under contention.
    """

    def __init__(
        self,
        store: KeyValueStore,
        refill_rate: float = 10.0,
        capacity: int = 30,
        clock: Callable[[], float] = time.time,
        max_cas_attempts: int = 8
    ):
        """
        Initialize the rate limiter.

        Args:
            store: Store holding one bucket per client IP
            refill_rate: Tokens added per second
            capacity: Maximum tokens (burst size)
            clock: Time source in seconds
            max_cas_attempts: Compare-and-swap retries before failing open
        """
        if refill_rate <= 0 or capacity <= 0:
            raise ValueError("refill_rate and capacity must be positive")
        self._store = store
        self.refill_rate = refill_rate
        self.capacity = capacity
        self._clock = clock
        self._max_cas_attempts = max_cas_attempts

    @property
    def idle_ttl(self) -> float:
        """Seconds after which an idle bucket is full again and can be evicted."""
        return self.capacity / self.refill_rate + 1.0

    def _load(self, raw: Optional[str], now: float) -> RateWindowState:
        if raw is not None:
            try:
                return RateWindowState.model_validate_json(raw)
            except ValidationError:
                logger.warning("Discarding unreadable rate limit state")
        return RateWindowState(
            tokens=float(self.capacity),
            last_refill=now,
            capacity=self.capacity,
            refill_rate=self.refill_rate,
        )

    def _refill(self, state: RateWindowState, now: float) -> float:
        elapsed = max(0.0, now - state.last_refill)
        return min(float(self.capacity), state.tokens + elapsed * self.refill_rate)

    def admit(self, client_ip: str) -> RateLimitDecision:
        """
        Check whether a request from client_ip may proceed.

        Args:
            client_ip: The client's IP address

        Returns:
            RateLimitDecision with allowed flag, remaining tokens and a
            retry-after hint (seconds) when rejected
        """
        if not client_ip or client_ip == "unknown":
            # Don't rate limit unknown IPs
            return RateLimitDecision(allowed=True, limit=self.capacity, remaining=self.capacity)

        key = f"{KEY_PREFIX}{client_ip}"

        try:
            for _ in range(self._max_cas_attempts):
                now = self._clock()
                raw = self._store.get(key)
                state = self._load(raw, now)
                tokens = self._refill(state, now)

                allowed = tokens >= 1.0
                if allowed:
                    tokens -= 1.0

                new_state = RateWindowState(
                    tokens=tokens,
                    last_refill=now,
                    capacity=self.capacity,
                    refill_rate=self.refill_rate,
                )
                if not self._store.compare_and_swap(key, raw, new_state.model_dump_json(), ttl=self.idle_ttl):
                    continue

                if allowed:
                    return RateLimitDecision(
                        allowed=True,
                        limit=self.capacity,
                        remaining=int(math.floor(tokens)),
                    )

                retry_after = (1.0 - tokens) / self.refill_rate
                logger.warning(
                    f"Rate limit exceeded for {client_ip}: bucket empty, retry in {retry_after:.2f}s"
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=self.capacity,
                    remaining=0,
                    retry_after=retry_after,
                )
        except StoreUnavailableError as e:
            logger.warning(f"Rate limiter store unavailable, admitting {client_ip}: {e}")
            return RateLimitDecision(allowed=True, limit=self.capacity, remaining=self.capacity, degraded=True)

        logger.warning(f"Rate limiter contention for {client_ip}, admitting without a token")
        return RateLimitDecision(allowed=True, limit=self.capacity, remaining=0, degraded=True)

    def get_client_stats(self, client_ip: str) -> Dict[str, any]:
        """
        Get rate limit statistics for a client IP without consuming a token.

        Args:
            client_ip: The client's IP address

        Returns:
            Dict with current token count, limit and refill rate
        """
        now = self._clock()
        try:
            raw = self._store.get(f"{KEY_PREFIX}{client_ip}")
        except StoreUnavailableError:
            raw = None
        tokens = self._refill(self._load(raw, now), now)

        return {
            "client_ip": client_ip,
            "tokens": tokens,
            "limit": self.capacity,
            "refill_per_second": self.refill_rate,
            "remaining": int(math.floor(tokens)),
        }

    def reset_client(self, client_ip: str) -> None:
        """
        Reset rate limit tracking for a client IP.

        Args:
            client_ip: The client's IP address to reset
        """
        self._store.delete(f"{KEY_PREFIX}{client_ip}")
        logger.debug(f"Reset rate limit for {client_ip}")


def get_rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    """
    Generate rate limit headers for HTTP responses.

    Args:
        decision: Result of RateLimiter.admit

    Returns:
        Dict of HTTP headers to add to the response
    """
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(max(1, math.ceil(decision.retry_after)))
    return headers
