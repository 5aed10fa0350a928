"""Guest checkout models - guest sessions and the reconciliation audit log."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Text, func
from sqlalchemy.dialects.postgresql import CITEXT, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ReconciliationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    REQUIRES_REVIEW = "requires_review"


class GuestSession(Base):
    """A checkout completed before the buyer had an account.

    Rows live until they are reconciled to a user or expire; the cleanup
    sweep deletes expired rows in batches.
    """
    __tablename__ = "guest_sessions"

    session_id: Mapped[str] = mapped_column(
        Text(),
        primary_key=True,
    )
    stripe_customer_id: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        index=True,
    )
    subscription_id: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    customer_email: Mapped[str] = mapped_column(
        CITEXT(),
        nullable=False,
        index=True,
    )
    plan_name: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    price_id: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
    )
    amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    extra: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        server_default="{}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    consumed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    consumed_by_user_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
    consumed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<GuestSession(session_id={self.session_id}, consumed={self.consumed})>"


class ReconciliationLog(Base):
    """Append-only audit trail, one row per reconciliation attempt."""
    __tablename__ = "reconciliation_logs"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )
    operation_type: Mapped[str] = mapped_column(Text(), nullable=False)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    session_id: Mapped[str] = mapped_column(Text(), nullable=False)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    email: Mapped[str] = mapped_column(CITEXT(), nullable=False)
    status: Mapped[str] = mapped_column(Text(), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    additional_data: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        server_default="{}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("reconciliation_logs_user_time_idx", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationLog(id={self.id}, op={self.operation_type}, status={self.status})>"
