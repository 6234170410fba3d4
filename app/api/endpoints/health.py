from datetime import datetime, timezone

from fastapi import APIRouter, Depends
import logging

from app.api.models.gas import HealthStatus
from app.core.dependencies import Services, get_services
from app.core.version import VERSION

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthStatus, summary="Health Check")
def health_check(services: Services = Depends(get_services)) -> HealthStatus:
    """
    Reports upstream connectivity.

    healthy: Ethereum RPC reachable and Redis reachable (or not configured)
    degraded: Ethereum RPC reachable, Redis configured but unreachable
    unhealthy: Ethereum RPC unreachable
    """
    redis_ok = services.redis_store.ping() if services.redis_store is not None else False
    ethereum_ok = services.data_ledger.ping()

    if ethereum_ok and (redis_ok or services.redis_store is None):
        status = "healthy"
    elif ethereum_ok:
        status = "degraded"
    else:
        status = "unhealthy"

    if status != "healthy":
        logger.warning(f"Health check: {status} (redis={redis_ok}, ethereum_rpc={ethereum_ok})")

    return HealthStatus(
        status=status,
        version=VERSION,
        redis=redis_ok,
        ethereum_rpc=ethereum_ok,
        uptime_seconds=services.analytics.uptime_seconds(),
        timestamp=datetime.now(timezone.utc),
    )
