from fastapi import APIRouter, Depends

from app.api.models.gas import Stats
from app.core.dependencies import Services, get_services

router = APIRouter()


@router.get("/stats", response_model=Stats, summary="Usage and payment statistics")
def get_stats(services: Services = Depends(get_services)) -> Stats:
    return Stats(**services.analytics.get_stats())
