"""Relational store for profiles, subscriptions and guest checkout state.

All methods open their own transaction through ``run_in_transaction`` and
return plain records from ``backend.app.billing.schemas``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.billing.schemas import (
    GuestSessionData,
    ProfileRecord,
    ReconciliationLogEntry,
)
from backend.app.models import (
    GuestSession,
    Profile,
    ReconciliationLog,
    StripeCustomer,
    Subscription,
)
from backend.app.utils.db import run_in_transaction

logger = logging.getLogger(__name__)


def _profile_record(row: Profile) -> ProfileRecord:
    return ProfileRecord(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        full_name=row.full_name,
        stripe_customer_id=row.stripe_customer_id,
    )


def _guest_session_data(row: GuestSession) -> GuestSessionData:
    return GuestSessionData(
        session_id=row.session_id,
        stripe_customer_id=row.stripe_customer_id,
        customer_email=row.customer_email,
        payment_status=row.payment_status,  # type: ignore[arg-type]
        subscription_id=row.subscription_id,
        plan_name=row.plan_name,
        price_id=row.price_id,
        amount=row.amount,
        currency=row.currency,
        metadata=dict(row.extra or {}),
        created_at=row.created_at,
        expires_at=row.expires_at,
        consumed=row.consumed,
        consumed_by_user_id=row.consumed_by_user_id,
    )


class BillingStore:
    """Async access to the application's billing tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile_by_user_id(self, user_id: str) -> Optional[ProfileRecord]:
        async def _op(session: AsyncSession) -> Optional[ProfileRecord]:
            row = await session.scalar(select(Profile).where(Profile.user_id == user_id))
            return _profile_record(row) if row is not None else None

        return await run_in_transaction(self._session_factory, _op)

    async def get_profile_by_customer_id(self, stripe_customer_id: str) -> Optional[ProfileRecord]:
        async def _op(session: AsyncSession) -> Optional[ProfileRecord]:
            row = await session.scalar(
                select(Profile)
                .where(Profile.stripe_customer_id == stripe_customer_id)
                .limit(1)
            )
            return _profile_record(row) if row is not None else None

        return await run_in_transaction(self._session_factory, _op)

    async def upsert_profile(
        self,
        user_id: str,
        email: str,
        stripe_customer_id: Optional[str],
        full_name: Optional[str] = None,
    ) -> tuple[ProfileRecord, bool]:
        """Create the user's profile or point it at ``stripe_customer_id``.

        Returns the profile and whether it was newly created. An existing
        full name is never overwritten with None.
        """

        async def _op(session: AsyncSession) -> tuple[ProfileRecord, bool]:
            row = await session.scalar(
                select(Profile).where(Profile.user_id == user_id).with_for_update()
            )
            created = row is None
            if row is None:
                row = Profile(user_id=user_id, email=email)
                session.add(row)
            row.stripe_customer_id = stripe_customer_id
            if full_name:
                row.full_name = full_name
            await session.flush()
            return _profile_record(row), created

        return await run_in_transaction(self._session_factory, _op)

    async def set_profile_customer_id(self, user_id: str, stripe_customer_id: Optional[str]) -> int:
        async def _op(session: AsyncSession) -> int:
            result = await session.execute(
                update(Profile)
                .where(Profile.user_id == user_id)
                .values(stripe_customer_id=stripe_customer_id)
            )
            return result.rowcount or 0

        return await run_in_transaction(self._session_factory, _op)

    # ------------------------------------------------------------------
    # Stripe customer tracking
    # ------------------------------------------------------------------

    async def record_stripe_customer(
        self,
        user_id: str,
        stripe_customer_id: str,
        email: Optional[str],
    ) -> None:
        async def _op(session: AsyncSession) -> None:
            stmt = insert(StripeCustomer).values(
                user_id=user_id,
                stripe_customer_id=stripe_customer_id,
                email=email,
            )
            await session.execute(
                stmt.on_conflict_do_update(
                    constraint="stripe_customers_user_customer_uniq",
                    set_={"email": stmt.excluded.email},
                )
            )

        await run_in_transaction(self._session_factory, _op)

    async def get_tracked_customer_id(self, user_id: str) -> Optional[str]:
        async def _op(session: AsyncSession) -> Optional[str]:
            return await session.scalar(
                select(StripeCustomer.stripe_customer_id)
                .where(StripeCustomer.user_id == user_id)
                .order_by(StripeCustomer.created_at.desc())
                .limit(1)
            )

        return await run_in_transaction(self._session_factory, _op)

    async def find_owner_of_customer(
        self, stripe_customer_id: str
    ) -> Optional[tuple[str, str]]:
        """Resolve (user_id, profile_id) for a Stripe customer.

        Looks at existing subscriptions, then profiles, then the tracking
        table; a match found only in the tracking table backfills the
        profile's customer id.
        """

        async def _op(session: AsyncSession) -> Optional[tuple[str, str]]:
            sub = (
                await session.execute(
                    select(Subscription.user_id, Subscription.profile_id)
                    .where(Subscription.stripe_customer_id == stripe_customer_id)
                    .limit(1)
                )
            ).first()
            if sub is not None:
                return sub.user_id, sub.profile_id

            profile = await session.scalar(
                select(Profile).where(Profile.stripe_customer_id == stripe_customer_id).limit(1)
            )
            if profile is not None:
                return profile.user_id, profile.id

            tracked_user = await session.scalar(
                select(StripeCustomer.user_id)
                .where(StripeCustomer.stripe_customer_id == stripe_customer_id)
                .limit(1)
            )
            if tracked_user is None:
                return None
            profile = await session.scalar(select(Profile).where(Profile.user_id == tracked_user))
            if profile is None:
                return None
            profile.stripe_customer_id = stripe_customer_id
            logger.info(
                "profile_customer_backfilled",
                extra={"user_id": tracked_user, "stripe_customer_id": stripe_customer_id},
            )
            return profile.user_id, profile.id

        return await run_in_transaction(self._session_factory, _op)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def upsert_subscription(self, values: dict[str, Any]) -> None:
        async def _op(session: AsyncSession) -> None:
            payload = dict(values)
            if "metadata" in payload:
                payload["extra"] = payload.pop("metadata")
            stmt = insert(Subscription).values(**payload)
            updatable = {
                key: getattr(stmt.excluded, key)
                for key in payload
                if key != "stripe_subscription_id"
            }
            await session.execute(
                stmt.on_conflict_do_update(
                    index_elements=[Subscription.stripe_subscription_id],
                    set_=updatable,
                )
            )

        await run_in_transaction(self._session_factory, _op)

    async def delete_subscriptions_for_user(self, user_id: str) -> int:
        async def _op(session: AsyncSession) -> int:
            result = await session.execute(
                delete(Subscription).where(Subscription.user_id == user_id)
            )
            return result.rowcount or 0

        return await run_in_transaction(self._session_factory, _op)

    # ------------------------------------------------------------------
    # Guest sessions
    # ------------------------------------------------------------------

    async def save_guest_session(self, data: GuestSessionData) -> None:
        async def _op(session: AsyncSession) -> None:
            stmt = insert(GuestSession).values(
                session_id=data.session_id,
                stripe_customer_id=data.stripe_customer_id,
                subscription_id=data.subscription_id,
                customer_email=data.customer_email,
                plan_name=data.plan_name,
                price_id=data.price_id,
                payment_status=data.payment_status,
                amount=data.amount,
                currency=data.currency,
                extra=data.metadata,
                created_at=data.created_at,
                expires_at=data.expires_at,
                consumed=False,
            )
            # Webhook redelivery must not reset a consumed session.
            await session.execute(
                stmt.on_conflict_do_nothing(index_elements=[GuestSession.session_id])
            )

        await run_in_transaction(self._session_factory, _op)

    async def get_guest_session(self, session_id: str, now: datetime) -> Optional[GuestSessionData]:
        async def _op(session: AsyncSession) -> Optional[GuestSessionData]:
            row = await session.scalar(
                select(GuestSession).where(
                    GuestSession.session_id == session_id,
                    GuestSession.expires_at >= now,
                )
            )
            return _guest_session_data(row) if row is not None else None

        return await run_in_transaction(self._session_factory, _op)

    async def mark_guest_session_consumed(
        self, session_id: str, user_id: str, at: datetime
    ) -> bool:
        async def _op(session: AsyncSession) -> bool:
            result = await session.execute(
                update(GuestSession)
                .where(GuestSession.session_id == session_id)
                .values(consumed=True, consumed_by_user_id=user_id, consumed_at=at)
            )
            return bool(result.rowcount)

        return await run_in_transaction(self._session_factory, _op)

    async def delete_expired_guest_sessions(self, now: datetime, limit: int) -> list[str]:
        async def _op(session: AsyncSession) -> list[str]:
            expired = (
                select(GuestSession.session_id)
                .where(GuestSession.expires_at < now)
                .limit(limit)
                .scalar_subquery()
            )
            result = await session.execute(
                delete(GuestSession)
                .where(GuestSession.session_id.in_(expired))
                .returning(GuestSession.session_id)
            )
            return list(result.scalars().all())

        return await run_in_transaction(self._session_factory, _op)

    async def list_pending_guest_sessions(self, now: datetime, limit: int) -> list[GuestSessionData]:
        async def _op(session: AsyncSession) -> list[GuestSessionData]:
            rows = await session.scalars(
                select(GuestSession)
                .where(GuestSession.consumed.is_(False), GuestSession.expires_at >= now)
                .order_by(GuestSession.created_at.desc())
                .limit(limit)
            )
            return [_guest_session_data(row) for row in rows]

        return await run_in_transaction(self._session_factory, _op)

    # ------------------------------------------------------------------
    # Reconciliation audit log
    # ------------------------------------------------------------------

    async def add_reconciliation_log(self, entry: ReconciliationLogEntry) -> None:
        async def _op(session: AsyncSession) -> None:
            session.add(
                ReconciliationLog(
                    operation_type=entry.operation_type,
                    user_id=entry.user_id,
                    session_id=entry.session_id,
                    stripe_customer_id=entry.stripe_customer_id,
                    subscription_id=entry.subscription_id,
                    email=entry.email,
                    status=entry.status,
                    error_message=entry.error_message,
                    additional_data=entry.additional_data,
                )
            )

        await run_in_transaction(self._session_factory, _op)

    async def list_reconciliation_logs(self, user_id: str) -> list[ReconciliationLogEntry]:
        async def _op(session: AsyncSession) -> list[ReconciliationLogEntry]:
            rows = await session.scalars(
                select(ReconciliationLog)
                .where(ReconciliationLog.user_id == user_id)
                .order_by(ReconciliationLog.created_at.desc())
            )
            return [
                ReconciliationLogEntry(
                    operation_type=row.operation_type,
                    user_id=row.user_id,
                    session_id=row.session_id,
                    email=row.email,
                    status=row.status,  # type: ignore[arg-type]
                    stripe_customer_id=row.stripe_customer_id,
                    subscription_id=row.subscription_id,
                    error_message=row.error_message,
                    additional_data=dict(row.additional_data or {}),
                    created_at=row.created_at,
                )
                for row in rows
            ]

        return await run_in_transaction(self._session_factory, _op)
