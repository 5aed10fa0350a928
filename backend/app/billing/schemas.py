"""Plain records passed between the billing services and the store.

Services never see ORM instances; the store converts rows into these
records so that collaborators can be swapped for in-memory fakes.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

PaymentStatus = Literal["pending", "paid", "failed"]


@dataclass
class ProfileRecord:
    id: str
    user_id: str
    email: str
    full_name: Optional[str] = None
    stripe_customer_id: Optional[str] = None


@dataclass
class CreateGuestSessionParams:
    """Identifying fields of a guest checkout, as reported by Stripe."""
    session_id: str
    stripe_customer_id: str
    customer_email: str
    payment_status: PaymentStatus
    subscription_id: Optional[str] = None
    plan_name: Optional[str] = None
    price_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class GuestSessionData(CreateGuestSessionParams):
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    consumed: bool = False
    consumed_by_user_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "expires_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class GuestPaymentInfo:
    """Payment details of a paid checkout session, used by reconciliation."""
    session_id: str
    stripe_customer_id: str
    customer_email: str
    payment_status: str
    subscription_id: Optional[str] = None
    plan_name: Optional[str] = None
    price_id: Optional[str] = None


@dataclass
class ReconciliationRequest:
    session_id: str
    user_email: str
    user_id: str
    stripe_customer_id: Optional[str] = None


@dataclass
class ReconciliationLogEntry:
    operation_type: str
    user_id: str
    session_id: str
    email: str
    status: Literal["success", "failed", "requires_review"]
    stripe_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    error_message: Optional[str] = None
    additional_data: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.created_at is not None:
            data["created_at"] = self.created_at.isoformat()
        return data
