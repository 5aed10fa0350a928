from __future__ import annotations

import logging

from fastapi import APIRouter, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..telemetry.metrics import get_registry
from ..utils.circuit_breaker import publish_breaker_states


logger = logging.getLogger(__name__)

router = APIRouter(tags=["telemetry"])

_FAILURE_MEDIA_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get(
    "/metrics",
    summary="Prometheus metrics endpoint",
    description=(
        "Webhook, reconciliation, guest cleanup, circuit breaker and HTTP "
        "metrics in the Prometheus text exposition format."
    ),
)
async def metrics_endpoint() -> Response:
    """Prometheus scrape endpoint.

    Breaker gauges are refreshed first so the Stripe breaker is reported
    even before its first transition.
    """
    try:
        publish_breaker_states()
        payload = generate_latest(get_registry())
    except Exception:
        logger.exception("metrics_exposition_failed")
        return Response(
            content="metrics exposition failed\n",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            media_type=_FAILURE_MEDIA_TYPE,
        )

    return Response(content=payload, status_code=status.HTTP_200_OK, media_type=CONTENT_TYPE_LATEST)
