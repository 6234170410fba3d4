from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class GasPrediction(BaseModel):
    """
    Predicted EIP-1559 fees for the next block, in gwei.
    """
    base_fee_gwei: float
    priority_fee_gwei: float
    max_fee_gwei: float
    confidence: float = Field(..., ge=0.0, le=1.0)
    block_number: int
    predicted_at: datetime
    next_block_time_seconds: int


class GasPredictionResponse(BaseModel):
    """
    Response envelope for the protected gas prediction endpoint.
    """
    success: bool = True
    data: GasPrediction
    timestamp: datetime
    cache_hit: bool
    data_source: str
    request_id: str


class PaymentDetails(BaseModel):
    chain: str
    asset: str
    asset_address: str
    amount: str
    recipient: str
    facilitator: Optional[str] = None


class PaymentFormat(BaseModel):
    header: str
    format: str


class PaymentInstructions(BaseModel):
    """
    How a client pays for the resource and proves it.
    """
    type: str = "x402.payment_required"
    version: str = "1.0.0"
    payment: PaymentDetails
    instructions: PaymentFormat


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    error_code: str
    timestamp: datetime
    request_id: str
    payment_instructions: Optional[PaymentInstructions] = None
    retry_after_seconds: Optional[float] = None


class HealthStatus(BaseModel):
    status: str
    version: str
    redis: bool
    ethereum_rpc: bool
    uptime_seconds: int
    timestamp: datetime


class Stats(BaseModel):
    total_payments: int
    revenue_today_usd: float
    requests_today: int
    cache_hit_rate: float
    avg_response_time_ms: float
    counters: Dict[str, Any] = {}
