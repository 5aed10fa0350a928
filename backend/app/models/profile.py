"""Profile model - one row per application user.

Profiles mirror Supabase auth users and carry the optional link to the
user's primary Stripe customer.
"""
from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Text
from sqlalchemy.dialects.postgresql import CITEXT, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin

if TYPE_CHECKING:
    from .billing import Subscription


class Profile(Base, TimestampMixin):
    """Application profile linked to Supabase auth and Stripe.

    Profiles are created at signup and never deleted.

    Attributes:
        id: Profile identifier
        user_id: UUID from Supabase auth.uid()
        email: Contact email (case-insensitive)
        full_name: Display name
        stripe_customer_id: Primary Stripe customer ID (cus_xxx)
    """
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        nullable=False,
        unique=True,
        index=True,
    )
    email: Mapped[str] = mapped_column(
        CITEXT(),
        nullable=False,
    )
    full_name: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
        index=True,
    )

    # Relationships
    subscriptions: Mapped[list["Subscription"]] = relationship(
        "Subscription",
        back_populates="profile",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, user_id={self.user_id})>"
