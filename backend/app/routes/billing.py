from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from backend.app.container import ServiceContainer
from backend.app.deps import get_container
from backend.app.errors import ApiError, BadRequest, NotFoundError
from backend.app.routes.payloads import read_json_object

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["billing"])

_REQUIRED_ADDRESS_FIELDS = ("line1", "city", "state", "postal_code", "country")
PAYMENT_HISTORY_LIMIT = 50


async def _lookup_customer_id(container: ServiceContainer, user_id: str) -> Optional[str]:
    lookup = await container.customers.get_customer_by_user_id(user_id)
    if not lookup.success or not lookup.stripe_customer_id:
        return None
    return lookup.stripe_customer_id


def _format_address(address: Optional[dict[str, Any]]) -> Optional[dict[str, str]]:
    if not address:
        return None
    return {
        "line1": address.get("line1") or "",
        "line2": address.get("line2") or "",
        "city": address.get("city") or "",
        "state": address.get("state") or "",
        "postal_code": address.get("postal_code") or "",
        "country": address.get("country") or "US",
    }


@router.post("/billing-address")
async def get_billing_address(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    try:
        body = await read_json_object(request)
        user_id = body.get("userId")
        if not user_id:
            raise BadRequest("Missing required field: userId")

        customer_id = await _lookup_customer_id(container, user_id)
        if customer_id is None:
            logger.info("billing_address_no_customer", extra={"user_id": user_id})
            return {"success": True, "address": None}

        customer = await container.stripe.retrieve_customer(customer_id)
        if customer.get("deleted"):
            return {"success": True, "address": None}

        return {"success": True, "address": _format_address(customer.get("address"))}
    except ApiError:
        raise
    except Exception:
        logger.exception("billing_address_fetch_failed")
        raise ApiError("Failed to fetch billing address")


@router.put("/billing-address")
async def update_billing_address(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    try:
        body = await read_json_object(request)
        user_id = body.get("userId")
        address = body.get("address")
        if not user_id or not address:
            raise BadRequest("Missing required fields: userId, address")
        if not isinstance(address, dict) or not all(address.get(f) for f in _REQUIRED_ADDRESS_FIELDS):
            raise BadRequest(
                "Missing required address fields: line1, city, state, postal_code, country"
            )

        customer_id = await _lookup_customer_id(container, user_id)
        if customer_id is None:
            raise NotFoundError("No billing account found. Please create a subscription first.")

        updated = await container.stripe.update_customer(
            customer_id,
            address={
                "line1": address["line1"],
                "line2": address.get("line2") or None,
                "city": address["city"],
                "state": address["state"],
                "postal_code": address["postal_code"],
                "country": address["country"],
            },
        )
        logger.info(
            "billing_address_updated",
            extra={"user_id": user_id, "stripe_customer_id": customer_id},
        )
        return {"success": True, "address": updated.get("address")}
    except ApiError:
        raise
    except Exception:
        logger.exception("billing_address_update_failed")
        raise ApiError("Failed to update billing address")


async def _with_invoice_url(container: ServiceContainer, payment: dict[str, Any]) -> dict[str, Any]:
    invoice_id = payment.get("invoice_id")
    if not invoice_id:
        return payment
    try:
        invoice = await container.stripe.retrieve_invoice(invoice_id)
    except Exception:
        logger.exception("payment_history_invoice_failed", extra={"invoice_id": invoice_id})
        return payment
    return {
        **payment,
        "invoice_url": invoice.get("hosted_invoice_url") or invoice.get("invoice_pdf"),
    }


@router.post("/payment-history")
async def payment_history(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """Most recent payments for the user's billing customer, newest first."""
    try:
        body = await read_json_object(request)
        user_id = body.get("userId")
        if not user_id:
            raise BadRequest("Missing required field: userId")

        customer_id = await _lookup_customer_id(container, user_id)
        if customer_id is None:
            logger.info("payment_history_no_customer", extra={"user_id": user_id})
            return {"success": True, "payments": []}

        intents = await container.stripe.list_payment_intents(customer_id, limit=PAYMENT_HISTORY_LIMIT)
        payments = [
            {
                "id": intent.get("id"),
                "amount": intent.get("amount"),
                "currency": intent.get("currency"),
                "status": intent.get("status"),
                "created": intent.get("created"),
                "invoice_id": (intent.get("metadata") or {}).get("invoice_id") or None,
                "description": intent.get("description"),
            }
            for intent in intents
        ]
        payments = list(await asyncio.gather(*(_with_invoice_url(container, p) for p in payments)))

        logger.info(
            "payment_history_fetched",
            extra={"stripe_customer_id": customer_id, "count": len(payments)},
        )
        return {"success": True, "payments": payments}
    except ApiError:
        raise
    except Exception:
        logger.exception("payment_history_failed")
        raise ApiError("Failed to fetch payment history")


@router.post("/sync")
async def force_sync(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """Re-pull the user's subscription from Stripe into the local copy."""
    try:
        body = await read_json_object(request)
        user_id = body.get("userId")
        if not user_id:
            raise BadRequest("Missing required field: userId")

        customer_id = await _lookup_customer_id(container, user_id)
        if customer_id is None:
            logger.warning("stripe_sync_no_customer", extra={"user_id": user_id})
            raise NotFoundError("No billing account found")

        data = await container.sync.sync_customer(customer_id)
        logger.info("stripe_sync_forced", extra={"user_id": user_id, "stripe_customer_id": customer_id})
        return {
            "success": True,
            "message": "Synchronization completed",
            "subscriptionData": data.as_dict(),
        }
    except ApiError:
        raise
    except Exception:
        logger.exception("stripe_sync_forced_failed")
        raise ApiError("Failed to synchronize with Stripe")


@router.post("/get-customer-id")
async def get_customer_id(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    try:
        body = await read_json_object(request)
        user_id = body.get("userId")
        if not user_id:
            raise BadRequest("Missing required field: userId")

        customer_id = await _lookup_customer_id(container, user_id)
        if customer_id is None:
            raise NotFoundError("No customer found")
        return {"success": True, "stripeCustomerId": customer_id}
    except ApiError:
        raise
    except Exception:
        logger.exception("customer_id_lookup_failed")
        raise ApiError("Failed to retrieve customer ID")


@router.post("/invoice")
async def get_invoice(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """Hosted page (or PDF) link for a single invoice."""
    try:
        body = await read_json_object(request)
        invoice_id = body.get("invoiceId")
        if not invoice_id:
            raise BadRequest("Missing required field: invoiceId")

        invoice = await container.stripe.retrieve_invoice(invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found")

        invoice_url = invoice.get("hosted_invoice_url") or invoice.get("invoice_pdf")
        if not invoice_url:
            raise NotFoundError("Invoice URL not available")

        return {
            "success": True,
            "invoiceUrl": invoice_url,
            "invoiceId": invoice.get("id"),
            "status": invoice.get("status"),
        }
    except ApiError:
        raise
    except Exception:
        logger.exception("invoice_fetch_failed")
        raise ApiError("Failed to fetch invoice")
