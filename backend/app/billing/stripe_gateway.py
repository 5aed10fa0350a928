"""Thin async wrapper over the Stripe SDK.

Every call goes through the ``stripe`` circuit breaker and returns plain
dicts, so services never depend on ``StripeObject`` behaviour and tests can
substitute a fake gateway.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import stripe

from backend.app.config import Settings
from backend.app.utils.circuit_breaker import CircuitBreaker, get_circuit_breaker

logger = logging.getLogger(__name__)


def _plain(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


class StripeGateway:
    """Stripe customers, subscriptions, checkout sessions and invoices."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        breaker: CircuitBreaker,
        api_version: Optional[str] = None,
    ) -> None:
        self._api_key = api_key
        self._api_version = api_version
        self._breaker = breaker

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            settings.STRIPE_SECRET_KEY,
            breaker=get_circuit_breaker("stripe", settings, target="stripe"),
            api_version=settings.STRIPE_API_VERSION,
        )

    def _request_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    async def _call(self, fn: Any, *args: Any, **params: Any) -> dict[str, Any]:
        result = await self._breaker.call_async(fn, *args, **params, **self._request_options())
        return _plain(result)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    @staticmethod
    def construct_event(payload: bytes, signature: str, secret: str) -> dict[str, Any]:
        """Verify a webhook signature and parse the event.

        Raises:
            ValueError: if the payload is not valid JSON
            stripe.SignatureVerificationError: if the signature does not match
        """
        event = stripe.Webhook.construct_event(payload, signature, secret)
        return _plain(event)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return await self._call(stripe.Customer.retrieve_async, customer_id)

    async def update_customer(self, customer_id: str, **params: Any) -> dict[str, Any]:
        return await self._call(stripe.Customer.modify_async, customer_id, **params)

    async def create_customer(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        return await self._call(stripe.Customer.create_async, **params)

    # ------------------------------------------------------------------
    # Subscriptions and products
    # ------------------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._call(stripe.Subscription.retrieve_async, subscription_id)

    async def update_subscription(self, subscription_id: str, **params: Any) -> dict[str, Any]:
        return await self._call(stripe.Subscription.modify_async, subscription_id, **params)

    async def list_subscriptions(
        self,
        customer_id: str,
        *,
        limit: int = 1,
        status: str = "all",
        expand: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        page = await self._call(
            stripe.Subscription.list_async,
            customer=customer_id,
            limit=limit,
            status=status,
            expand=expand or [],
        )
        return list(page.get("data") or [])

    async def retrieve_product(self, product_id: str) -> dict[str, Any]:
        return await self._call(stripe.Product.retrieve_async, product_id)

    # ------------------------------------------------------------------
    # Checkout, payments and invoices
    # ------------------------------------------------------------------

    async def retrieve_checkout_session(
        self,
        session_id: str,
        *,
        expand: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        return await self._call(
            stripe.checkout.Session.retrieve_async,
            session_id,
            expand=expand or [],
        )

    async def list_payment_intents(self, customer_id: str, *, limit: int = 50) -> list[dict[str, Any]]:
        page = await self._call(
            stripe.PaymentIntent.list_async,
            customer=customer_id,
            limit=limit,
        )
        return list(page.get("data") or [])

    async def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        return await self._call(stripe.Invoice.retrieve_async, invoice_id)
