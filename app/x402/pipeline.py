# app/x402/pipeline.py
"""
Request admission pipeline for the protected gas prediction resource.

Flow:
1. Rate limit by client IP (fail open)
2. No X-Payment header -> PaymentRequired with payment instructions
3. Verify the payment onchain (fail closed)
4. Serve the prediction from the cache, computing it on a miss

The HTTP layer calls handle() once per request and maps the returned
outcome to a response.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional, Union

from app.api.models.gas import GasPrediction, PaymentDetails, PaymentFormat, PaymentInstructions
from app.api.models.payment import PaymentRecord
from app.services.analytics import Analytics
from app.services.cache import ResponseCache
from app.services.gas_predictor import GasPredictor, UpstreamUnavailableError
from app.x402 import audit
from app.x402.payments import USDC_DECIMALS, PaymentVerifier, VerificationStatus
from app.x402.ratelimit import RateLimitDecision, RateLimiter

logger = logging.getLogger(__name__)

PREDICTION_CACHE_KEY = "gas:prediction"
X_PAYMENT_HEADER = "X-Payment"

# VerificationStatus -> (error_code, HTTP status)
PAYMENT_REJECTIONS = {
    VerificationStatus.INVALID_PROOF: ("INVALID_PAYMENT_PROOF", 400),
    VerificationStatus.NOT_FOUND: ("PAYMENT_NOT_FOUND", 402),
    VerificationStatus.INSUFFICIENT_FUNDS: ("INSUFFICIENT_PAYMENT", 402),
    VerificationStatus.WRONG_RECIPIENT: ("WRONG_RECIPIENT", 402),
    VerificationStatus.ALREADY_CONSUMED: ("PAYMENT_ALREADY_USED", 402),
}


@dataclass(frozen=True)
class PaymentTerms:
    """What a client must pay, and where."""
    price_usd: str
    network: str
    asset_address: str
    recipient: str
    facilitator_url: Optional[str] = None
    asset: str = "USDC"
    enabled: bool = True


@dataclass(frozen=True)
class RateLimited:
    decision: RateLimitDecision


@dataclass(frozen=True)
class PaymentRequired:
    instructions: PaymentInstructions


@dataclass(frozen=True)
class PaymentRejected:
    status: VerificationStatus
    reason: str
    error_code: str
    http_status: int


@dataclass(frozen=True)
class UpstreamFailure:
    reason: str
    error_code: str
    http_status: int


@dataclass(frozen=True)
class Served:
    prediction: GasPrediction
    cache_hit: bool
    payment: Optional[PaymentRecord] = None
    rate_limit: Optional[RateLimitDecision] = None


PipelineOutcome = Union[RateLimited, PaymentRequired, PaymentRejected, UpstreamFailure, Served]


def build_payment_instructions(terms: PaymentTerms) -> PaymentInstructions:
    """Describe how to pay: chain, asset, amount, recipient and proof header."""
    return PaymentInstructions(
        payment=PaymentDetails(
            chain=terms.network,
            asset=terms.asset,
            asset_address=terms.asset_address,
            amount=terms.price_usd,
            recipient=terms.recipient,
            facilitator=terms.facilitator_url,
        ),
        instructions=PaymentFormat(header=X_PAYMENT_HEADER, format="transaction_hash"),
    )


class RequestPipeline:
    """Rate limit -> payment -> cache -> prediction."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        verifier: PaymentVerifier,
        cache: ResponseCache,
        predictor: GasPredictor,
        analytics: Analytics,
        terms: PaymentTerms,
        cache_ttl: float = 12.0
    ):
        self.rate_limiter = rate_limiter
        self.verifier = verifier
        self.cache = cache
        self.predictor = predictor
        self.analytics = analytics
        self.terms = terms
        self.cache_ttl = cache_ttl

    def handle(
        self,
        client_ip: str,
        payment_proof: Optional[str],
        request_id: Optional[str] = None,
        path: str = "/api/gas/prediction"
    ) -> PipelineOutcome:
        """
        Run one request through admission and serving.

        Args:
            client_ip: Client network address (rate limit key)
            payment_proof: Value of the X-Payment header, if any
            request_id: Identifier used in audit events
            path: Requested path, for the audit log

        Returns:
            One of RateLimited, PaymentRequired, PaymentRejected,
            UpstreamFailure or Served
        """
        started = time.perf_counter()
        self.analytics.record_request()
        audit.log_request_received(client_ip, "GET", path, request_id=request_id)

        decision = self.rate_limiter.admit(client_ip)
        if decision.degraded:
            self.analytics.increment("rate_limit_degraded")
        if not decision.allowed:
            self.analytics.increment("rate_limited")
            audit.log_rate_limited(client_ip, decision.retry_after, request_id=request_id)
            return RateLimited(decision)

        payment: Optional[PaymentRecord] = None
        if self.terms.enabled:
            if not payment_proof:
                self.analytics.increment("payment_required")
                logger.info(f"x402: No X-Payment header from {client_ip}, returning 402 for ${self.terms.price_usd}")
                audit.log_payment_required_sent(
                    client_ip,
                    price_usd=self.terms.price_usd,
                    currency=self.terms.asset,
                    network=self.terms.network,
                    pay_to=self.terms.recipient,
                    request_id=request_id,
                )
                return PaymentRequired(build_payment_instructions(self.terms))

            result = self.verifier.verify(payment_proof)
            self.analytics.record_payment_outcome(result.status.value)

            if not result.is_verified:
                audit.log_payment_failed(
                    client_ip, result.status.value, result.reason,
                    tx_hash=result.tx_hash, request_id=request_id,
                )
                if result.status in PAYMENT_REJECTIONS:
                    error_code, http_status = PAYMENT_REJECTIONS[result.status]
                    return PaymentRejected(result.status, result.reason, error_code, http_status)
                self.analytics.increment("upstream_failures")
                return UpstreamFailure(
                    f"Payment verification unavailable: {result.reason}",
                    "PAYMENT_VERIFICATION_UNAVAILABLE",
                    503,
                )

            payment = result.record
            self.analytics.record_payment(payment.amount / 10 ** USDC_DECIMALS)
            audit.log_payment_verified(
                client_ip, payment.sender, payment.tx_hash, payment.amount, request_id=request_id,
            )

        try:
            cached = self.cache.get_or_compute(PREDICTION_CACHE_KEY, self.cache_ttl, self.predictor.predict)
        except UpstreamUnavailableError as e:
            logger.error(f"Gas prediction failed: {e}")
            self.analytics.increment("upstream_failures")
            audit.log_error(client_ip, "upstream_unavailable", str(e), request_id=request_id)
            if payment is not None:
                # Nothing was served, so the same proof may be presented again
                self.verifier.release(payment.tx_hash)
            return UpstreamFailure(str(e), "UPSTREAM_ERROR", 502)

        latency_ms = (time.perf_counter() - started) * 1000
        self.analytics.record_served(cached.cache_hit, latency_ms)
        audit.log_prediction_served(
            client_ip, cached.value.block_number, cached.cache_hit, request_id=request_id,
        )
        return Served(cached.value, cached.cache_hit, payment=payment, rate_limit=decision)
