"""Stripe -> local subscription sync.

Stripe owns subscription state. ``StripeSync.sync_customer`` is the only
writer of the local ``subscriptions`` copy and is called from webhooks and
after reconciliation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from backend.app.billing.store import BillingStore
from backend.app.billing.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

_DEFAULT_PLAN_NAME = "Unknown Plan"
_FALLBACK_PRODUCT_NAME = "Subscription Plan"
_DEFAULT_PERIOD = timedelta(days=30)


@dataclass
class SubscriptionData:
    subscription_id: Optional[str] = None
    status: str = "none"
    price_id: Optional[str] = None
    plan_name: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[int] = None
    currency: Optional[str] = None
    unit_amount: Optional[int] = None
    interval: Optional[str] = None
    payment_method: Optional[dict[str, Optional[str]]] = field(default=None)

    def as_dict(self) -> dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "status": self.status,
            "priceId": self.price_id,
            "planName": self.plan_name,
            "currentPeriodStart": self.current_period_start,
            "currentPeriodEnd": self.current_period_end,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "trialEnd": self.trial_end,
            "currency": self.currency,
            "unitAmount": self.unit_amount,
            "interval": self.interval,
            "paymentMethod": self.payment_method,
        }


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StripeSync:
    def __init__(self, store: BillingStore, stripe_gateway: StripeGateway) -> None:
        self._store = store
        self._stripe = stripe_gateway

    async def _plan_name(self, price: dict[str, Any]) -> Optional[str]:
        metadata = price.get("metadata") or {}
        if metadata.get("plan_name"):
            return metadata["plan_name"]
        if price.get("nickname"):
            return price["nickname"]

        product = price.get("product")
        if isinstance(product, dict):
            return product.get("name")
        if isinstance(product, str) and product:
            try:
                return (await self._stripe.retrieve_product(product)).get("name")
            except Exception:
                logger.warning("stripe_product_lookup_failed", extra={"product_id": product})
                return _FALLBACK_PRODUCT_NAME
        return None

    async def fetch_subscription_data(self, customer_id: str) -> SubscriptionData:
        subscriptions = await self._stripe.list_subscriptions(
            customer_id,
            limit=1,
            status="all",
            expand=["data.default_payment_method", "data.items.data.price"],
        )
        if not subscriptions:
            return SubscriptionData()

        sub = subscriptions[0]
        items = (sub.get("items") or {}).get("data") or []
        item: dict[str, Any] = items[0] if items else {}
        price: dict[str, Any] = item.get("price") or {}

        card = None
        payment_method = sub.get("default_payment_method")
        if isinstance(payment_method, dict) and payment_method.get("card"):
            card = {
                "brand": payment_method["card"].get("brand"),
                "last4": payment_method["card"].get("last4"),
            }

        return SubscriptionData(
            subscription_id=sub.get("id"),
            status=sub.get("status") or "none",
            price_id=price.get("id"),
            plan_name=await self._plan_name(price) if price else None,
            # Newer API versions report billing periods on the item.
            current_period_start=sub.get("current_period_start") or item.get("current_period_start"),
            current_period_end=sub.get("current_period_end") or item.get("current_period_end"),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            trial_end=sub.get("trial_end"),
            currency=price.get("currency"),
            unit_amount=price.get("unit_amount"),
            interval=(price.get("recurring") or {}).get("interval"),
            payment_method=card,
        )

    async def sync_customer(self, customer_id: str) -> SubscriptionData:
        """Pull the customer's latest subscription and mirror it locally.

        Raises on any Stripe or database failure so that webhook deliveries
        are retried.
        """
        logger.info("stripe_sync_started", extra={"stripe_customer_id": customer_id})
        data = await self.fetch_subscription_data(customer_id)

        owner = await self._store.find_owner_of_customer(customer_id)
        if owner is None:
            logger.warning("stripe_sync_unknown_customer", extra={"stripe_customer_id": customer_id})
            return data
        user_id, profile_id = owner

        if data.status == "none" or not data.subscription_id:
            deleted = await self._store.delete_subscriptions_for_user(user_id)
            logger.info(
                "stripe_sync_subscription_removed",
                extra={"stripe_customer_id": customer_id, "user_id": user_id, "deleted": deleted},
            )
            return data

        now = datetime.now(timezone.utc)
        period_start = _from_timestamp(data.current_period_start) or now
        period_end = _from_timestamp(data.current_period_end) or now + _DEFAULT_PERIOD

        await self._store.upsert_subscription(
            {
                "user_id": user_id,
                "profile_id": profile_id,
                "stripe_customer_id": customer_id,
                "stripe_subscription_id": data.subscription_id,
                "stripe_price_id": data.price_id or "",
                "status": data.status,
                "plan_name": data.plan_name or _DEFAULT_PLAN_NAME,
                "interval": data.interval or "month",
                "unit_amount": data.unit_amount or 0,
                "currency": data.currency or "usd",
                "current_period_start": period_start,
                "current_period_end": period_end,
                "trial_end": _from_timestamp(data.trial_end),
                "cancel_at_period_end": data.cancel_at_period_end,
                "metadata": {"payment_method": data.payment_method},
            }
        )
        logger.info(
            "stripe_sync_completed",
            extra={
                "stripe_customer_id": customer_id,
                "user_id": user_id,
                "subscription_id": data.subscription_id,
                "status": data.status,
            },
        )
        return data
