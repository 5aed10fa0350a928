"""Service wiring.

External clients are created once per process and handed to the services
that need them. Routes resolve services from ``app.state.container``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.auth.account_linking import AccountLinkingService
from backend.app.auth.supabase_admin import SupabaseAdminClient
from backend.app.billing.customer_service import CustomerService
from backend.app.billing.guest_sessions import GuestSessionTracker
from backend.app.billing.reconciliation import ReconciliationService
from backend.app.billing.store import BillingStore
from backend.app.billing.stripe_gateway import StripeGateway
from backend.app.billing.sync import StripeSync
from backend.app.billing.webhooks import WebhookDispatcher
from backend.app.config import Settings
from backend.app.utils.db import create_engine_from_settings, create_session_factory
from backend.app.utils.feature_flags import is_guest_checkout_enabled
from backend.app.utils.redis_client import RedisLocker, get_redis_client

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    stripe: StripeGateway
    store: BillingStore
    customers: CustomerService
    sync: StripeSync
    guest_sessions: GuestSessionTracker
    reconciliation: ReconciliationService
    webhooks: WebhookDispatcher
    account_linking: Optional[AccountLinkingService] = None
    supabase_admin: Optional[SupabaseAdminClient] = None
    engine: Optional[AsyncEngine] = None
    redis: Optional[Redis] = None

    async def aclose(self) -> None:
        if self.supabase_admin is not None:
            await self.supabase_admin.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_container(settings: Settings) -> ServiceContainer:
    engine = create_engine_from_settings(settings)
    store = BillingStore(create_session_factory(engine))
    stripe_gateway = StripeGateway.from_settings(settings)
    redis = get_redis_client(settings)

    customers = CustomerService(store, stripe_gateway)
    sync = StripeSync(store, stripe_gateway)
    guest_sessions = GuestSessionTracker(
        store,
        stripe_gateway,
        ttl_hours=settings.GUEST_SESSION_TTL_HOURS,
        cleanup_batch_size=settings.GUEST_CLEANUP_BATCH_SIZE,
    )
    reconciliation = ReconciliationService(
        store,
        stripe_gateway,
        customers,
        sync,
        locker=RedisLocker(redis, settings, ttl_seconds=settings.RECONCILIATION_LOCK_TTL_SECONDS),
    )
    webhooks = WebhookDispatcher(
        stripe_gateway,
        guest_sessions,
        sync,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        cleanup_probability=settings.GUEST_CLEANUP_PROBABILITY,
        guest_checkout_enabled=is_guest_checkout_enabled(settings),
    )

    supabase_admin = SupabaseAdminClient.from_settings(settings)
    account_linking = AccountLinkingService(supabase_admin) if supabase_admin else None
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("stripe_webhook_secret_missing")

    return ServiceContainer(
        settings=settings,
        stripe=stripe_gateway,
        store=store,
        customers=customers,
        sync=sync,
        guest_sessions=guest_sessions,
        reconciliation=reconciliation,
        webhooks=webhooks,
        account_linking=account_linking,
        supabase_admin=supabase_admin,
        engine=engine,
        redis=redis,
    )
