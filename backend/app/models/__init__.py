"""SQLAlchemy ORM models for the SaaS billing backend.

This module exports all model classes for use throughout the application.
"""
from .base import Base, TimestampMixin
from .billing import StripeCustomer, Subscription, SubscriptionStatus
from .guest import GuestSession, ReconciliationLog, ReconciliationStatus
from .profile import Profile

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Profile
    "Profile",
    # Billing
    "StripeCustomer",
    "Subscription",
    "SubscriptionStatus",
    # Guest checkout
    "GuestSession",
    "ReconciliationLog",
    "ReconciliationStatus",
]
