"""
Prometheus metrics endpoint.

GET /metrics
Returns LLM, fallback, pipeline and HTTP metrics in Prometheus text format.
"""
from fastapi import APIRouter, Response
from fastapi.responses import PlainTextResponse

from aria_coach.core.logging import get_logger
from aria_coach.core.metrics import get_metrics, get_metrics_content_type

logger = get_logger(__name__)
router = APIRouter()


@router.get("", response_class=PlainTextResponse)
async def metrics():
    """Scrape endpoint; resource gauges are refreshed on each call."""
    try:
        payload = get_metrics()
    except ValueError as e:
        logger.error(
            "metrics_endpoint_error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        payload = b"# Error collecting metrics\n"
    return Response(content=payload, media_type=get_metrics_content_type())
