# app/x402/responses.py
"""
HTTP mapping for pipeline outcomes.

Every rejection is a JSON body with success=false, a human-readable error
and a machine-readable error_code. Protected data is only ever included in
the success envelope.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import Request
from starlette.responses import JSONResponse

from app.api.models.gas import ErrorResponse, GasPredictionResponse, PaymentInstructions
from app.x402.pipeline import (
    PaymentRejected,
    PaymentRequired,
    PipelineOutcome,
    RateLimited,
    Served,
    UpstreamFailure,
)
from app.x402.ratelimit import get_rate_limit_headers

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check for forwarded headers first
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection
    if request.client:
        return request.client.host

    return "unknown"


def create_error_response(
    status_code: int,
    error: str,
    error_code: str,
    request_id: str,
    payment_instructions: Optional[PaymentInstructions] = None,
    retry_after_seconds: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        error_code=error_code,
        timestamp=datetime.now(timezone.utc),
        request_id=request_id,
        payment_instructions=payment_instructions,
        retry_after_seconds=retry_after_seconds,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


def create_402_response(
    payment_instructions: PaymentInstructions,
    request_id: str,
    error_message: Optional[str] = None
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    Args:
        payment_instructions: How to pay and how to present the proof
        request_id: Request identifier echoed in the body
        error_message: Error message for the response

    Returns:
        JSONResponse with 402 status and payment details
    """
    amount = payment_instructions.payment.amount
    return create_error_response(
        status_code=402,
        error=error_message or f"Payment required: {amount} {payment_instructions.payment.asset}",
        error_code="PAYMENT_REQUIRED",
        request_id=request_id,
        payment_instructions=payment_instructions,
    )


def outcome_to_response(
    outcome: PipelineOutcome,
    request_id: str,
    data_source: str
) -> JSONResponse:
    """Map a pipeline outcome to its HTTP response."""
    if isinstance(outcome, Served):
        body = GasPredictionResponse(
            data=outcome.prediction,
            timestamp=datetime.now(timezone.utc),
            cache_hit=outcome.cache_hit,
            data_source=data_source,
            request_id=request_id,
        )
        headers = get_rate_limit_headers(outcome.rate_limit) if outcome.rate_limit else None
        return JSONResponse(status_code=200, content=body.model_dump(mode="json"), headers=headers)

    if isinstance(outcome, RateLimited):
        return create_error_response(
            status_code=429,
            error="Rate limit exceeded",
            error_code="RATE_LIMIT_EXCEEDED",
            request_id=request_id,
            retry_after_seconds=round(outcome.decision.retry_after, 3),
            headers=get_rate_limit_headers(outcome.decision),
        )

    if isinstance(outcome, PaymentRequired):
        return create_402_response(outcome.instructions, request_id)

    if isinstance(outcome, PaymentRejected):
        return create_error_response(
            status_code=outcome.http_status,
            error=f"Payment verification failed: {outcome.reason}",
            error_code=outcome.error_code,
            request_id=request_id,
        )

    if isinstance(outcome, UpstreamFailure):
        return create_error_response(
            status_code=outcome.http_status,
            error=outcome.reason,
            error_code=outcome.error_code,
            request_id=request_id,
        )

    logger.error(f"Unhandled pipeline outcome: {outcome!r}")
    return create_error_response(500, "Internal server error", "INTERNAL_ERROR", request_id)
