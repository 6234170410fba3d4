from fastapi import APIRouter, BackgroundTasks, Depends, Request
from starlette.responses import JSONResponse
import logging

from app.core.config import settings
from app.core.dependencies import Services, get_services
from app.x402.audit import generate_request_id
from app.x402.payments import report_settlement
from app.x402.pipeline import Served, X_PAYMENT_HEADER
from app.x402.responses import get_client_ip, outcome_to_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/prediction", summary="Predicted gas fees for the next block (x402 protected)")
def get_gas_prediction(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Returns the gas prediction for the next Ethereum block.

    Requires an X-Payment header carrying the hash of a USDC transfer to the
    gateway on the settlement network. Without it a 402 response describes
    how to pay. Each transaction hash authorizes exactly one request.
    """
    request_id = generate_request_id()
    client_ip = get_client_ip(request)

    outcome = services.pipeline.handle(
        client_ip,
        request.headers.get(X_PAYMENT_HEADER),
        request_id=request_id,
        path=request.url.path,
    )

    facilitator_url = services.pipeline.terms.facilitator_url
    if isinstance(outcome, Served) and outcome.payment is not None and facilitator_url:
        background_tasks.add_task(report_settlement, facilitator_url, outcome.payment)

    return outcome_to_response(outcome, request_id, settings.DATA_SOURCE_NAME)
