# app/services/gas_predictor.py
"""
Gas fee prediction from recent Ethereum blocks.

Formula:
1. Fetch the base fees of the last N blocks (oldest first)
2. Weight block i by decay^(N-1-i) so the newest block weighs 1.0
3. base_fee = weighted average of the base fees
4. priority_fee = configured tip
5. max_fee = base_fee * multiplier + priority_fee
6. confidence = 1 / (1 + stddev / mean), scaled down when fewer than N
   blocks were available
"""
import logging
import math
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from app.api.models.gas import GasPrediction
from app.services.ledger import BlockHeader, LedgerClient, LedgerUnavailableError

logger = logging.getLogger(__name__)

WEI_PER_GWEI = 10 ** 9
ETHEREUM_BLOCK_TIME_SECONDS = 12


class UpstreamUnavailableError(Exception):
    """Raised when no chain data could be obtained for a prediction."""


def wei_to_gwei(wei: int) -> float:
    """Convert wei to gwei."""
    return wei / WEI_PER_GWEI


def exponential_weights(n: int, decay: float = 0.95) -> List[float]:
    """Weights for n samples ordered oldest first; the newest gets 1.0."""
    return [decay ** (n - 1 - i) for i in range(n)]


def weighted_average(values: Sequence[float], weights: Sequence[float]) -> float:
    if len(values) != len(weights):
        raise ValueError("values and weights must have the same length")
    total_weight = sum(weights)
    if not values or total_weight <= 0:
        raise ValueError("weighted_average needs at least one positively weighted value")
    return sum(v * w for v, w in zip(values, weights)) / total_weight


def confidence_score(values: Sequence[float], expected_count: Optional[int] = None) -> float:
    """
    Confidence in [0, 1] from the spread of values.

    Uses the coefficient of variation: 1 / (1 + stddev / mean). With the
    mean fixed, more variance always means lower confidence. When fewer
    than expected_count values are present the score is scaled by the
    fraction available.
    """
    n = len(values)
    if n == 0:
        return 0.0

    if n < 2:
        score = 0.5
    else:
        mean = sum(values) / n
        variance = sum((v - mean) ** 2 for v in values) / n
        std_dev = math.sqrt(variance)
        if std_dev == 0:
            score = 1.0
        elif mean <= 0:
            score = 0.0
        else:
            score = 1.0 / (1.0 + std_dev / mean)

    if expected_count and n < expected_count:
        score *= n / expected_count

    return min(1.0, max(0.0, score))


def build_prediction(
    headers: Sequence[BlockHeader],
    expected_count: int,
    decay: float = 0.95,
    priority_fee_gwei: float = 2.0,
    max_fee_multiplier: float = 1.2,
    predicted_at: Optional[datetime] = None
) -> GasPrediction:
    """
    Compute a prediction from block headers ordered oldest first.

    Raises:
        ValueError: If headers is empty
    """
    if not headers:
        raise ValueError("At least one block header is required")

    base_fees = [wei_to_gwei(h.base_fee_wei) for h in headers]
    weights = exponential_weights(len(base_fees), decay)
    base_fee_gwei = weighted_average(base_fees, weights)

    return GasPrediction(
        base_fee_gwei=base_fee_gwei,
        priority_fee_gwei=priority_fee_gwei,
        max_fee_gwei=base_fee_gwei * max_fee_multiplier + priority_fee_gwei,
        confidence=confidence_score(base_fees, expected_count),
        block_number=headers[-1].number,
        predicted_at=predicted_at or datetime.now(timezone.utc),
        next_block_time_seconds=ETHEREUM_BLOCK_TIME_SECONDS,
    )


class GasPredictor:
    """Builds gas predictions from the data-source ledger."""

    def __init__(
        self,
        ledger: LedgerClient,
        history_blocks: int = 20,
        decay: float = 0.95,
        priority_fee_gwei: float = 2.0,
        max_fee_multiplier: float = 1.2,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        if max_fee_multiplier < 1.0 or priority_fee_gwei < 0:
            raise ValueError("max_fee_multiplier must be >= 1 and priority_fee_gwei >= 0")
        self._ledger = ledger
        self.history_blocks = history_blocks
        self.decay = decay
        self.priority_fee_gwei = priority_fee_gwei
        self.max_fee_multiplier = max_fee_multiplier
        self._now = now

    def predict(self) -> GasPrediction:
        """
        Predict fees for the next block.

        Raises:
            UpstreamUnavailableError: If no block headers could be fetched
        """
        try:
            headers = self._ledger.get_recent_block_headers(self.history_blocks)
        except LedgerUnavailableError as e:
            raise UpstreamUnavailableError(f"Could not fetch block headers: {e}") from e

        if not headers:
            raise UpstreamUnavailableError("No blocks fetched")

        if len(headers) < self.history_blocks:
            logger.warning(
                f"Only {len(headers)}/{self.history_blocks} blocks available, reducing confidence"
            )

        prediction = build_prediction(
            headers,
            expected_count=self.history_blocks,
            decay=self.decay,
            priority_fee_gwei=self.priority_fee_gwei,
            max_fee_multiplier=self.max_fee_multiplier,
            predicted_at=self._now(),
        )

        logger.info(
            f"Gas prediction: base={prediction.base_fee_gwei:.2f} gwei, "
            f"max={prediction.max_fee_gwei:.2f} gwei, confidence={prediction.confidence:.2f}"
        )
        return prediction
