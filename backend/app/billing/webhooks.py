"""Stripe webhook verification and dispatch.

Only a fixed set of subscription, checkout and invoice events is acted
upon. Customers that are not linked to an application user ("guests") are
never synced from webhooks; their checkouts are recorded as guest sessions
and picked up later by reconciliation.
"""
from __future__ import annotations

import logging
import random
from typing import Any, Callable, Optional

import stripe

from backend.app.billing.guest_sessions import GuestSessionTracker
from backend.app.billing.schemas import CreateGuestSessionParams
from backend.app.billing.stripe_gateway import StripeGateway
from backend.app.billing.sync import StripeSync

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
INVOICE_EVENTS = frozenset({"invoice.payment_succeeded", "invoice.payment_failed"})
CHECKOUT_COMPLETED = "checkout.session.completed"

RELEVANT_EVENTS = SUBSCRIPTION_EVENTS | INVOICE_EVENTS | {CHECKOUT_COMPLETED}


class WebhookSecretMissing(RuntimeError):
    pass


class InvalidSignature(ValueError):
    pass


class WebhookProcessingError(RuntimeError):
    pass


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class WebhookDispatcher:
    def __init__(
        self,
        stripe_gateway: StripeGateway,
        guest_sessions: GuestSessionTracker,
        sync: StripeSync,
        *,
        webhook_secret: Optional[str],
        cleanup_probability: float = 0.01,
        guest_checkout_enabled: bool = True,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self._stripe = stripe_gateway
        self._guest_sessions = guest_sessions
        self._sync = sync
        self._webhook_secret = webhook_secret
        self._cleanup_probability = cleanup_probability
        self._guest_checkout_enabled = guest_checkout_enabled
        self._random = random_fn

    def verify(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify the signature header and return the parsed event.

        Raises:
            WebhookSecretMissing: if no signing secret is configured
            InvalidSignature: if the payload or signature is rejected
        """
        if not self._webhook_secret:
            raise WebhookSecretMissing("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            return self._stripe.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise InvalidSignature(str(e)) from e

    async def maybe_cleanup(self) -> None:
        """Occasionally sweep expired guest sessions; never fails the webhook."""
        if self._random() >= self._cleanup_probability:
            return
        result = await self._guest_sessions.cleanup_expired_sessions()
        if not result.success:
            logger.warning("webhook_guest_cleanup_failed", extra={"error": result.error})

    async def dispatch(self, event: dict[str, Any]) -> str:
        """Handle a verified event and return its outcome label.

        Raises on processing failures so that Stripe redelivers the event.
        """
        event_type = event.get("type", "")
        await self.maybe_cleanup()

        if event_type not in RELEVANT_EVENTS:
            logger.info("webhook_event_ignored", extra={"event_type": event_type})
            return "ignored"

        obj = (event.get("data") or {}).get("object") or {}
        if event_type == CHECKOUT_COMPLETED:
            return await self._handle_checkout_completed(obj)
        return await self._handle_customer_event(event_type, obj)

    async def _handle_customer_event(self, event_type: str, obj: dict[str, Any]) -> str:
        customer_id = _object_id(obj.get("customer"))
        if not customer_id:
            logger.info("webhook_event_without_customer", extra={"event_type": event_type})
            return "skipped"

        check = await self._guest_sessions.is_guest_customer(customer_id)
        if check.is_guest:
            logger.info(
                "webhook_guest_customer_skipped",
                extra={"event_type": event_type, "stripe_customer_id": customer_id},
            )
            return "guest_skipped"

        await self._sync.sync_customer(customer_id)
        return "synced"

    async def _handle_checkout_completed(self, session: dict[str, Any]) -> str:
        customer_id = _object_id(session.get("customer"))
        if session.get("mode") != "subscription" or not customer_id:
            logger.info(
                "webhook_checkout_skipped",
                extra={"session_id": session.get("id"), "mode": session.get("mode")},
            )
            return "skipped"

        check = await self._guest_sessions.is_guest_customer(customer_id)
        if not check.is_guest:
            await self._sync.sync_customer(customer_id)
            return "synced"

        if not self._guest_checkout_enabled:
            logger.info(
                "webhook_guest_checkout_disabled",
                extra={"session_id": session.get("id"), "stripe_customer_id": customer_id},
            )
            return "guest_skipped"

        customer = await self._stripe.retrieve_customer(customer_id)
        email = customer.get("email") or (session.get("customer_details") or {}).get("email")
        if not email:
            raise WebhookProcessingError(f"guest checkout {session.get('id')} has no customer email")

        metadata = dict(session.get("metadata") or {})
        subscription_id = _object_id(session.get("subscription"))
        created = await self._guest_sessions.create(
            CreateGuestSessionParams(
                session_id=session["id"],
                stripe_customer_id=customer_id,
                customer_email=email,
                payment_status="paid" if session.get("payment_status") == "paid" else "pending",
                subscription_id=subscription_id,
                plan_name=metadata.get("planName"),
                price_id=metadata.get("priceId"),
                amount=session.get("amount_total"),
                currency=session.get("currency"),
                metadata=metadata,
            )
        )
        if not created.success:
            raise WebhookProcessingError(created.error or "guest session could not be recorded")

        await self._stripe.update_customer(
            customer_id,
            metadata={"is_guest_checkout": "true", "checkout_session_id": session["id"]},
        )
        logger.info(
            "webhook_guest_checkout_recorded",
            extra={"session_id": session["id"], "stripe_customer_id": customer_id},
        )
        return "guest_recorded"
