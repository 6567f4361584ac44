"""
Admin endpoints: service statistics and Prometheus metrics.
Both require the admin key (X-API-Key, Bearer or apiKey).
"""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from app.core.build_service import get_build_service
from app.core.metrics import metrics
from app.core.security import require_admin
from app.schemas.build import ServiceStatsResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])


@router.get("/api/stats", response_model=ServiceStatsResponse)
async def service_stats(request: Request) -> ServiceStatsResponse:
    """Durable build counters, queue status and registry size."""
    require_admin(request)
    return ServiceStatsResponse(**get_build_service().service_stats())


@router.get("/metrics", response_class=PlainTextResponse)
async def get_metrics(request: Request) -> str:
    """Export metrics in Prometheus text format."""
    require_admin(request)
    return metrics.to_prometheus()
