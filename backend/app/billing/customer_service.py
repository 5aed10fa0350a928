"""Customer/profile service.

Makes sure that every user has exactly one primary Stripe customer and a
profile pointing at it. All operations are idempotent and report failures
through result objects.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from backend.app.billing.schemas import ProfileRecord
from backend.app.billing.store import BillingStore
from backend.app.billing.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


@dataclass
class CustomerLookupResult:
    success: bool
    profile: Optional[ProfileRecord] = None
    stripe_customer_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CustomerCreationResult:
    success: bool
    profile: Optional[ProfileRecord] = None
    stripe_customer_id: Optional[str] = None
    error: Optional[str] = None
    is_new_customer: bool = False
    is_new_profile: bool = False


@dataclass
class StripeCustomerResult:
    success: bool
    customer: Optional[dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class OperationResult:
    success: bool
    error: Optional[str] = None


class CustomerService:
    def __init__(self, store: BillingStore, stripe_gateway: StripeGateway) -> None:
        self._store = store
        self._stripe = stripe_gateway

    async def get_customer_by_user_id(self, user_id: str) -> CustomerLookupResult:
        try:
            profile = await self._store.get_profile_by_user_id(user_id)
        except Exception as e:
            logger.exception("customer_lookup_failed", extra={"user_id": user_id})
            return CustomerLookupResult(success=False, error=str(e))

        if profile is None:
            return CustomerLookupResult(success=False, error="Profile not found")
        return CustomerLookupResult(
            success=True,
            profile=profile,
            stripe_customer_id=profile.stripe_customer_id,
        )

    async def create_customer_and_profile(
        self,
        user_id: str,
        email: str,
        stripe_customer_id: str,
        full_name: Optional[str] = None,
    ) -> CustomerCreationResult:
        """Create the profile, or point an existing one at ``stripe_customer_id``."""
        try:
            profile, created = await self._store.upsert_profile(
                user_id, email, stripe_customer_id, full_name
            )
        except Exception as e:
            logger.exception("profile_upsert_failed", extra={"user_id": user_id})
            return CustomerCreationResult(success=False, error=f"Database error: {e}")

        logger.info(
            "profile_upserted",
            extra={
                "user_id": user_id,
                "profile_id": profile.id,
                "stripe_customer_id": stripe_customer_id,
                "profile_created": created,
            },
        )
        return CustomerCreationResult(
            success=True,
            profile=profile,
            stripe_customer_id=stripe_customer_id,
            is_new_profile=created,
        )

    async def create_stripe_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> StripeCustomerResult:
        try:
            customer = await self._stripe.create_customer(
                email,
                name=name,
                metadata={"source": "saaskit_signup", **(metadata or {})},
            )
        except Exception as e:
            logger.exception("stripe_customer_create_failed")
            return StripeCustomerResult(success=False, error=str(e) or "Unknown Stripe error")

        logger.info("stripe_customer_created", extra={"stripe_customer_id": customer.get("id")})
        return StripeCustomerResult(success=True, customer=customer)

    async def _existing_customer_id(self, user_id: str) -> Optional[str]:
        profile = await self._store.get_profile_by_user_id(user_id)
        if profile is not None and profile.stripe_customer_id:
            return profile.stripe_customer_id
        return await self._store.get_tracked_customer_id(user_id)

    async def ensure_customer_exists(
        self,
        user_id: str,
        email: str,
        full_name: Optional[str] = None,
    ) -> CustomerCreationResult:
        """Reuse the user's customer if there is one, otherwise create it."""
        try:
            existing_id = await self._existing_customer_id(user_id)
        except Exception as e:
            logger.exception("customer_existence_check_failed", extra={"user_id": user_id})
            return CustomerCreationResult(success=False, error=f"Database error: {e}")

        if existing_id:
            return await self.create_customer_and_profile(user_id, email, existing_id, full_name)

        created = await self.create_stripe_customer(email, full_name, {"user_id": user_id})
        if not created.success or not created.customer:
            return CustomerCreationResult(
                success=False,
                error=created.error or "Failed to create Stripe customer",
            )
        customer_id = created.customer["id"]

        try:
            await self._store.record_stripe_customer(user_id, customer_id, email)
        except Exception:
            logger.warning(
                "stripe_customer_tracking_failed",
                extra={"user_id": user_id, "stripe_customer_id": customer_id},
            )

        result = await self.create_customer_and_profile(user_id, email, customer_id, full_name)
        if result.success:
            result.is_new_customer = True
        return result

    async def update_customer_stripe_id(self, user_id: str, stripe_customer_id: str) -> OperationResult:
        try:
            updated = await self._store.set_profile_customer_id(user_id, stripe_customer_id)
        except Exception as e:
            logger.exception("customer_id_update_failed", extra={"user_id": user_id})
            return OperationResult(success=False, error=str(e))
        if not updated:
            return OperationResult(success=False, error="Profile not found")
        return OperationResult(success=True)
