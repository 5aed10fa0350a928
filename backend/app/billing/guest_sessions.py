"""Guest checkout session tracking.

A guest session records a checkout completed before the buyer had an
account. Rows are kept in ``guest_sessions`` until they are reconciled or
expire; Stripe's checkout session stays the fallback source when no local
row exists.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from backend.app.billing.schemas import CreateGuestSessionParams, GuestSessionData
from backend.app.billing.store import BillingStore
from backend.app.billing.stripe_gateway import StripeGateway
from backend.app.telemetry.metrics import record_guest_cleanup

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 24


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GuestSessionResult:
    success: bool
    session: Optional[GuestSessionData] = None
    error: Optional[str] = None


@dataclass
class GuestCustomerCheck:
    is_guest: bool
    user_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CleanupResult:
    success: bool
    deleted_count: int = 0
    error: Optional[str] = None


@dataclass
class PendingSessionsResult:
    success: bool
    sessions: list[GuestSessionData] = field(default_factory=list)
    error: Optional[str] = None


class GuestSessionTracker:
    def __init__(
        self,
        store: BillingStore,
        stripe_gateway: StripeGateway,
        *,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        cleanup_batch_size: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._stripe = stripe_gateway
        self._ttl = timedelta(hours=ttl_hours)
        self._cleanup_batch_size = cleanup_batch_size
        self._clock = clock

    def expiry_for(self, created_at: datetime) -> datetime:
        return created_at + self._ttl

    async def create(self, params: CreateGuestSessionParams) -> GuestSessionResult:
        created_at = self._clock()
        session = GuestSessionData(
            **asdict(params),
            created_at=created_at,
            expires_at=self.expiry_for(created_at),
        )
        try:
            await self._store.save_guest_session(session)
        except Exception as e:
            logger.exception("guest_session_create_failed", extra={"session_id": params.session_id})
            return GuestSessionResult(success=False, error=str(e))

        logger.info(
            "guest_session_created",
            extra={
                "session_id": session.session_id,
                "stripe_customer_id": session.stripe_customer_id,
                "expires_at": session.expires_at.isoformat(),
            },
        )
        return GuestSessionResult(success=True, session=session)

    async def get(self, session_id: str) -> GuestSessionResult:
        """Look up a guest session, falling back to Stripe's checkout session."""
        try:
            local = await self._store.get_guest_session(session_id, self._clock())
        except Exception as e:
            logger.exception("guest_session_lookup_failed", extra={"session_id": session_id})
            return GuestSessionResult(success=False, error=str(e))
        if local is not None:
            return GuestSessionResult(success=True, session=local)
        return await self._get_from_stripe(session_id)

    async def _get_from_stripe(self, session_id: str) -> GuestSessionResult:
        try:
            checkout = await self._stripe.retrieve_checkout_session(
                session_id, expand=["customer", "subscription"]
            )
        except Exception as e:
            logger.exception("guest_session_stripe_lookup_failed", extra={"session_id": session_id})
            return GuestSessionResult(success=False, error=str(e) or "Failed to fetch session")

        if not checkout:
            return GuestSessionResult(success=False, error="Session or customer not found")
        customer = checkout.get("customer")
        if not customer:
            return GuestSessionResult(success=False, error="Session or customer not found")
        if not isinstance(customer, dict) or not customer.get("email"):
            return GuestSessionResult(success=False, error="Customer email not found")

        subscription = checkout.get("subscription")
        if isinstance(subscription, dict):
            subscription = subscription.get("id")

        metadata = dict(checkout.get("metadata") or {})
        created_at = (
            datetime.fromtimestamp(checkout["created"], tz=timezone.utc)
            if checkout.get("created")
            else self._clock()
        )
        session = GuestSessionData(
            session_id=session_id,
            stripe_customer_id=customer["id"],
            subscription_id=subscription,
            customer_email=customer["email"],
            plan_name=metadata.get("planName"),
            price_id=metadata.get("priceId"),
            payment_status="paid" if checkout.get("payment_status") == "paid" else "pending",
            amount=checkout.get("amount_total"),
            currency=checkout.get("currency"),
            metadata=metadata,
            created_at=created_at,
            expires_at=self.expiry_for(created_at),
        )
        return GuestSessionResult(success=True, session=session)

    async def mark_consumed(self, session_id: str, user_id: str) -> GuestSessionResult:
        try:
            updated = await self._store.mark_guest_session_consumed(session_id, user_id, self._clock())
        except Exception as e:
            logger.exception("guest_session_consume_failed", extra={"session_id": session_id})
            return GuestSessionResult(success=False, error=str(e))

        if not updated:
            # Sessions resolved through Stripe have no local row.
            logger.info("guest_session_consume_no_local_row", extra={"session_id": session_id})
        else:
            logger.info(
                "guest_session_consumed",
                extra={"session_id": session_id, "user_id": user_id},
            )
        return GuestSessionResult(success=True)

    async def is_guest_customer(self, customer_id: str) -> GuestCustomerCheck:
        """Decide whether a Stripe customer belongs to no application user.

        A profile pointing at the customer always wins. Otherwise the
        customer's ``user_id`` metadata decides, and a deleted or untagged
        customer is a guest.
        """
        try:
            profile = await self._store.get_profile_by_customer_id(customer_id)
        except Exception as e:
            logger.exception("guest_customer_profile_check_failed", extra={"stripe_customer_id": customer_id})
            return GuestCustomerCheck(is_guest=False, error=str(e))
        if profile is not None:
            return GuestCustomerCheck(is_guest=False, user_id=profile.user_id)

        try:
            customer = await self._stripe.retrieve_customer(customer_id)
        except Exception as e:
            logger.exception("guest_customer_stripe_check_failed", extra={"stripe_customer_id": customer_id})
            return GuestCustomerCheck(is_guest=False, error=str(e))

        if not customer.get("deleted"):
            user_id = (customer.get("metadata") or {}).get("user_id")
            if user_id:
                # Tagged in Stripe but not yet in profiles: reconciliation in flight.
                return GuestCustomerCheck(is_guest=False, user_id=user_id)
        return GuestCustomerCheck(is_guest=True)

    async def cleanup_expired_sessions(self) -> CleanupResult:
        now = self._clock()
        try:
            deleted = await self._store.delete_expired_guest_sessions(now, self._cleanup_batch_size)
        except Exception as e:
            logger.exception("guest_session_cleanup_failed")
            return CleanupResult(success=False, error=str(e))

        record_guest_cleanup(len(deleted), timestamp=now.timestamp())
        logger.info("guest_session_cleanup_completed", extra={"deleted_count": len(deleted)})
        return CleanupResult(success=True, deleted_count=len(deleted))

    async def get_pending_guest_sessions(self, limit: int = 50) -> PendingSessionsResult:
        try:
            sessions = await self._store.list_pending_guest_sessions(self._clock(), limit)
        except Exception as e:
            logger.exception("guest_session_pending_lookup_failed")
            return PendingSessionsResult(success=False, error=str(e))
        return PendingSessionsResult(success=True, sessions=sessions)
