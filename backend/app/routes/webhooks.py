from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from backend.app.billing.webhooks import InvalidSignature, WebhookSecretMissing
from backend.app.container import ServiceContainer
from backend.app.deps import get_container
from backend.app.errors import ApiError, BadRequest
from backend.app.telemetry.metrics import observe_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["stripe"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Receive a Stripe event. The raw body is needed for signature checks."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.warning("webhook_missing_signature")
        raise BadRequest("Missing stripe-signature header")

    dispatcher = container.webhooks
    try:
        event = dispatcher.verify(payload, signature)
    except WebhookSecretMissing:
        logger.error("webhook_secret_not_configured")
        raise ApiError("Webhook secret not configured")
    except InvalidSignature:
        logger.warning("webhook_signature_invalid")
        observe_webhook_event("unknown", "invalid_signature")
        raise BadRequest("Invalid signature")

    event_type = event.get("type", "unknown")
    logger.info("webhook_event_received", extra={"event_type": event_type, "event_id": event.get("id")})
    try:
        outcome = await dispatcher.dispatch(event)
    except Exception:
        logger.exception("webhook_processing_failed", extra={"event_type": event_type})
        observe_webhook_event(event_type, "failed")
        raise ApiError("Webhook processing failed")

    observe_webhook_event(event_type, outcome)
    return {"received": True}
