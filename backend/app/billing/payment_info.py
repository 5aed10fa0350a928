from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from backend.app.billing.schemas import GuestPaymentInfo
from backend.app.billing.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@dataclass
class PaymentInfoResult:
    success: bool
    payment_info: Optional[GuestPaymentInfo] = None
    error: Optional[str] = None


async def extract_guest_payment_info(stripe_gateway: StripeGateway, session_id: str) -> PaymentInfoResult:
    """Read the paid checkout session and pull out what reconciliation needs."""
    try:
        session = await stripe_gateway.retrieve_checkout_session(
            session_id, expand=["subscription", "customer"]
        )
    except Exception as e:
        logger.exception("payment_info_extraction_failed", extra={"session_id": session_id})
        return PaymentInfoResult(success=False, error=str(e) or "Unknown error")

    if not session:
        return PaymentInfoResult(success=False, error="Checkout session not found")

    if session.get("payment_status") != "paid":
        return PaymentInfoResult(success=False, error="Payment was not successful")

    customer = session.get("customer")
    if not isinstance(customer, dict) or not customer.get("email"):
        return PaymentInfoResult(success=False, error="No customer or email found in session")

    subscription = session.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")

    metadata = session.get("metadata") or {}
    return PaymentInfoResult(
        success=True,
        payment_info=GuestPaymentInfo(
            session_id=session_id,
            stripe_customer_id=customer["id"],
            customer_email=customer["email"],
            payment_status=session["payment_status"],
            subscription_id=subscription or None,
            plan_name=metadata.get("planName"),
            price_id=metadata.get("priceId"),
        ),
    )
