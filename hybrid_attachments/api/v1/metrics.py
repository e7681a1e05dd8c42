"""
Metrics API endpoints.

Prometheus text exposition for scraping.
"""

from fastapi import APIRouter, Response
from fastapi.responses import PlainTextResponse
import logging

from hybrid_attachments.services.metrics_service import metrics_collector, CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Export metrics in Prometheus text format for scraping",
    response_class=PlainTextResponse,
    tags=["monitoring"]
)
async def get_prometheus_metrics():
    """
    Export metrics in Prometheus format.

    Includes HTTP request counts and durations, upload outcomes, outbox
    events by type and outcome, and remote store call latency.
    """
    return Response(
        content=metrics_collector.export(),
        media_type=CONTENT_TYPE_LATEST,
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0"
        }
    )
