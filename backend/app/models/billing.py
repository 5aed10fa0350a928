"""Billing models - Subscriptions and the Stripe customer tracking table.

Subscriptions are a denormalised read copy of Stripe's records, written
only by the Stripe sync.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import CITEXT, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin

if TYPE_CHECKING:
    from .profile import Profile


class SubscriptionStatus(str, Enum):
    """Stripe subscription statuses."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    UNPAID = "unpaid"
    PAUSED = "paused"


class Subscription(Base, TimestampMixin):
    """Read-optimised copy of a user's Stripe subscription.

    Attributes:
        id: Auto-incrementing primary key
        user_id: Supabase user id
        profile_id: Owning profile
        stripe_customer_id: Stripe customer ID (cus_xxx)
        stripe_subscription_id: Stripe subscription ID (sub_xxx)
        status: Subscription status from Stripe
        plan_name: Human readable plan name
        current_period_start: Start of current billing period
        current_period_end: End of current billing period
        cancel_at_period_end: Whether Stripe will cancel at period end
    """
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        nullable=False,
        index=True,
    )
    profile_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    stripe_customer_id: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        index=True,
    )
    stripe_subscription_id: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        unique=True,
    )
    stripe_price_id: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        server_default="",
    )
    status: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        index=True,
    )
    plan_name: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
    )
    interval: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        server_default="month",
    )
    unit_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default="0",
    )
    currency: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        server_default="usd",
    )
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    current_period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    trial_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default="false",
    )
    # "metadata" is reserved on declarative classes.
    extra: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        server_default="{}",
    )

    # Relationships
    profile: Mapped["Profile"] = relationship("Profile", back_populates="subscriptions")

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, plan={self.plan_name}, status={self.status})>"


class StripeCustomer(Base, TimestampMixin):
    """Tracking table of every Stripe customer ever linked to a user.

    A user can own several customers (e.g. a guest checkout customer plus
    one created at signup); the profile points at the primary one.
    """
    __tablename__ = "stripe_customers"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        nullable=False,
        index=True,
    )
    stripe_customer_id: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        index=True,
    )
    email: Mapped[Optional[str]] = mapped_column(
        CITEXT(),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "stripe_customer_id",
            name="stripe_customers_user_customer_uniq",
        ),
    )

    def __repr__(self) -> str:
        return f"<StripeCustomer(user_id={self.user_id}, customer={self.stripe_customer_id})>"
