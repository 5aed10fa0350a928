"""Guest payment reconciliation.

Links the Stripe customer (and subscription) of a guest checkout to the
account of a user who signed up or logged in with the same email.

Every attempt ends in one of three terminal states, ``LinkedExisting``,
``RequiresReview`` or ``Failed``, and writes exactly one audit entry to
``reconciliation_logs``. Multi-step updates register an undo for each
completed step; when a later required step fails the undos run in reverse
order before the failure is reported.
"""
from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ClassVar, Optional, Union

from backend.app.billing.customer_service import CustomerService
from backend.app.billing.payment_info import PaymentInfoResult, extract_guest_payment_info
from backend.app.billing.schemas import (
    GuestPaymentInfo,
    ReconciliationLogEntry,
    ReconciliationRequest,
)
from backend.app.billing.store import BillingStore
from backend.app.billing.stripe_gateway import StripeGateway
from backend.app.billing.sync import StripeSync
from backend.app.telemetry.metrics import observe_reconciliation
from backend.app.utils.redis_client import LockNotAcquired, RedisLocker

logger = logging.getLogger(__name__)

OP_RECONCILE = "reconcile_guest_payment"
OP_LINK_GUEST = "link_guest_customer"
OP_DUPLICATE_EMAIL = "duplicate_email_detected"

DUPLICATE_EMAIL = "duplicate_email"


# ---------------------------------------------------------------------------
# Terminal states
# ---------------------------------------------------------------------------


@dataclass
class LinkedExisting:
    """The guest customer now belongs to the user."""

    message: str
    profile_id: Optional[str] = None
    subscription_linked: bool = False

    success: ClassVar[bool] = True
    operation: ClassVar[str] = "linked_existing"
    error: ClassVar[Optional[str]] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "profileId": self.profile_id,
            "subscriptionLinked": self.subscription_linked,
            "operation": self.operation,
        }


@dataclass
class RequiresReview:
    """A conflict that needs a human; nothing was changed."""

    message: str
    error: Optional[str] = None
    reason: Optional[str] = None

    success: ClassVar[bool] = False
    operation: ClassVar[str] = "requires_review"

    def as_dict(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, "error": self.error}


@dataclass
class Failed:
    message: str
    error: Optional[str] = None

    success: ClassVar[bool] = False
    operation: ClassVar[str] = "failed"

    def as_dict(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, "error": self.error}


ReconciliationResult = Union[LinkedExisting, RequiresReview, Failed]


@dataclass
class HistoryResult:
    success: bool
    operations: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Compensation
# ---------------------------------------------------------------------------


Undo = Callable[[], Awaitable[Any]]


class Compensations:
    """Stack of undo actions for completed steps."""

    def __init__(self) -> None:
        self._stack: list[tuple[str, Undo]] = []

    def push(self, step: str, undo: Undo) -> None:
        self._stack.append((step, undo))

    @property
    def steps(self) -> list[str]:
        return [step for step, _ in self._stack]

    async def unwind(self) -> list[str]:
        """Run undos newest first; returns the steps that could not be undone."""
        failed: list[str] = []
        while self._stack:
            step, undo = self._stack.pop()
            try:
                await undo()
            except Exception:
                logger.exception("reconciliation_undo_failed", extra={"step": step})
                failed.append(step)
            else:
                logger.info("reconciliation_step_undone", extra={"step": step})
        return failed


class StepFailed(Exception):
    """A required step returned an unsuccessful result."""

    def __init__(self, message: str, error: Optional[str]):
        super().__init__(error or message)
        self.message = message
        self.error = error


def _restore_metadata(previous: dict[str, Any], changed: dict[str, Any]) -> dict[str, str]:
    # Stripe deletes a metadata key when it is set to an empty string.
    return {key: previous.get(key, "") for key in changed}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ReconciliationService:
    def __init__(
        self,
        store: BillingStore,
        stripe_gateway: StripeGateway,
        customers: CustomerService,
        sync: StripeSync,
        *,
        locker: Optional[RedisLocker] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._stripe = stripe_gateway
        self._customers = customers
        self._sync = sync
        self._locker = locker
        self._clock = clock

    async def extract_guest_payment_info(self, session_id: str) -> PaymentInfoResult:
        return await extract_guest_payment_info(self._stripe, session_id)

    async def reconcile_guest_payment(self, request: ReconciliationRequest) -> ReconciliationResult:
        lock: Any = (
            self._locker.hold(f"reconcile:{request.session_id}")
            if self._locker is not None
            else contextlib.nullcontext()
        )
        try:
            async with lock:
                return await self._reconcile(request)
        except LockNotAcquired:
            logger.warning(
                "reconciliation_already_in_progress",
                extra={"session_id": request.session_id, "user_id": request.user_id},
            )
            result = Failed(
                message="Reconciliation already in progress",
                error=f"Session {request.session_id} is being reconciled",
            )
            await self._audit(request, OP_RECONCILE, "failed", error_message=result.error)
            return result
        except Exception as e:
            logger.exception("reconciliation_unexpected_error", extra={"session_id": request.session_id})
            await self._audit(request, OP_RECONCILE, "failed", error_message=str(e))
            return Failed(message="Failed to reconcile guest payment", error=str(e) or "Unknown error")

    async def _reconcile(self, request: ReconciliationRequest) -> ReconciliationResult:
        logger.info(
            "reconciliation_started",
            extra={"user_id": request.user_id, "session_id": request.session_id},
        )

        extracted = await self.extract_guest_payment_info(request.session_id)
        if not extracted.success or extracted.payment_info is None:
            await self._audit(request, OP_RECONCILE, "failed", error_message=extracted.error)
            return Failed(message="Failed to extract payment information", error=extracted.error)
        info = extracted.payment_info

        if info.customer_email.lower() != request.user_email.lower():
            error = f"Payment email: {info.customer_email}, Account email: {request.user_email}"
            await self._audit(
                request,
                OP_RECONCILE,
                "failed",
                stripe_customer_id=info.stripe_customer_id,
                error_message="Email mismatch",
            )
            return Failed(message="Email mismatch between payment and account", error=error)

        guest_customer = await self._stripe.retrieve_customer(info.stripe_customer_id)
        owner = await self._current_owner(info.stripe_customer_id, guest_customer)
        if owner is not None and owner != request.user_id:
            logger.warning(
                "reconciliation_customer_owned_elsewhere",
                extra={"stripe_customer_id": info.stripe_customer_id, "user_id": request.user_id},
            )
            return await self.handle_duplicate_email_scenario(
                request.user_email,
                request.user_id,
                request.session_id,
                stripe_customer_id=info.stripe_customer_id,
            )

        existing = await self._customers.get_customer_by_user_id(request.user_id)
        if existing.success and existing.stripe_customer_id:
            return await self._link_to_user_with_customer(
                request, info, guest_customer, existing.stripe_customer_id
            )
        return await self._link_to_user_without_customer(request, info, guest_customer)

    async def _current_owner(self, customer_id: str, customer: dict[str, Any]) -> Optional[str]:
        profile = await self._store.get_profile_by_customer_id(customer_id)
        if profile is not None:
            return profile.user_id
        if customer.get("deleted"):
            return None
        return (customer.get("metadata") or {}).get("user_id") or None

    async def _track_customer(self, request: ReconciliationRequest, customer_id: str) -> None:
        """Tracking-table write; failures are warnings only."""
        try:
            await self._store.record_stripe_customer(request.user_id, customer_id, request.user_email)
        except Exception as e:
            logger.warning(
                "reconciliation_tracking_update_failed",
                extra={"user_id": request.user_id, "stripe_customer_id": customer_id, "error": str(e)},
            )

    async def _link_to_user_without_customer(
        self,
        request: ReconciliationRequest,
        info: GuestPaymentInfo,
        guest_customer: dict[str, Any],
    ) -> ReconciliationResult:
        customer_id = info.stripe_customer_id
        logger.info(
            "reconciliation_linking_guest_customer",
            extra={"stripe_customer_id": customer_id, "user_id": request.user_id},
        )
        undo = Compensations()
        try:
            previous_metadata = dict(guest_customer.get("metadata") or {})
            tag = {
                "user_id": request.user_id,
                "linked_date": self._clock().isoformat(),
                "original_type": "guest_checkout",
            }
            await self._stripe.update_customer(customer_id, metadata={**previous_metadata, **tag})
            undo.push(
                "tag_customer",
                lambda: self._stripe.update_customer(
                    customer_id, metadata=_restore_metadata(previous_metadata, tag)
                ),
            )

            previous_profile = await self._store.get_profile_by_user_id(request.user_id)
            previous_customer_id = previous_profile.stripe_customer_id if previous_profile else None
            # Registered first: the upsert may commit before the call fails.
            undo.push(
                "link_profile",
                lambda: self._store.set_profile_customer_id(request.user_id, previous_customer_id),
            )
            profile_result = await self._customers.create_customer_and_profile(
                request.user_id, request.user_email, customer_id
            )
            if not profile_result.success:
                raise StepFailed("Failed to link customer to user profile", profile_result.error)

            await self._track_customer(request, customer_id)

            if info.subscription_id:
                await self._sync.sync_customer(customer_id)
        except Exception as e:
            return await self._fail_and_unwind(
                request, info, undo, e, customer_id=customer_id,
                default_message="Failed to link payment to account",
            )

        await self._audit(
            request,
            OP_LINK_GUEST,
            "success",
            stripe_customer_id=customer_id,
            subscription_id=info.subscription_id,
        )
        logger.info(
            "reconciliation_succeeded",
            extra={"user_id": request.user_id, "stripe_customer_id": customer_id, "branch": "new_link"},
        )
        return LinkedExisting(
            message="Successfully linked payment to your account",
            profile_id=profile_result.profile.id if profile_result.profile else None,
            subscription_linked=bool(info.subscription_id),
        )

    async def _link_to_user_with_customer(
        self,
        request: ReconciliationRequest,
        info: GuestPaymentInfo,
        guest_customer: dict[str, Any],
        existing_customer_id: str,
    ) -> ReconciliationResult:
        guest_id = info.stripe_customer_id
        logger.info(
            "reconciliation_linking_to_existing_customer",
            extra={"stripe_customer_id": guest_id, "existing_customer_id": existing_customer_id},
        )

        if not info.subscription_id:
            await self._audit(
                request,
                OP_LINK_GUEST,
                "failed",
                stripe_customer_id=existing_customer_id,
                error_message="Missing subscription ID",
            )
            return Failed(message="No subscription found to transfer", error="Missing subscription ID")
        subscription_id = info.subscription_id

        undo = Compensations()
        reconciled_at = self._clock().isoformat()
        tag = {
            "user_id": request.user_id,
            "reconciled_at": reconciled_at,
            "original_session": request.session_id,
            "account_type": "converted_from_guest",
        }
        try:
            subscription = await self._stripe.retrieve_subscription(subscription_id)

            previous_email = guest_customer.get("email")
            previous_customer_metadata = dict(guest_customer.get("metadata") or {})
            await self._stripe.update_customer(guest_id, email=request.user_email, metadata=tag)
            undo.push(
                "retag_guest_customer",
                lambda: self._stripe.update_customer(
                    guest_id,
                    email=previous_email or "",
                    metadata=_restore_metadata(previous_customer_metadata, tag),
                ),
            )

            previous_subscription_metadata = dict(subscription.get("metadata") or {})
            await self._stripe.update_subscription(
                subscription_id, metadata={**previous_subscription_metadata, **tag}
            )
            undo.push(
                "retag_subscription",
                lambda: self._stripe.update_subscription(
                    subscription_id,
                    metadata=_restore_metadata(previous_subscription_metadata, tag),
                ),
            )

            if existing_customer_id != guest_id:
                existing = await self._stripe.retrieve_customer(existing_customer_id)
                previous_existing_metadata = dict(existing.get("metadata") or {})
                secondary = {
                    "status": "secondary_customer",
                    "primary_customer": guest_id,
                    "reconciled_at": reconciled_at,
                }
                await self._stripe.update_customer(existing_customer_id, metadata=secondary)
                undo.push(
                    "mark_secondary_customer",
                    lambda: self._stripe.update_customer(
                        existing_customer_id,
                        metadata=_restore_metadata(previous_existing_metadata, secondary),
                    ),
                )
                logger.info(
                    "reconciliation_marked_secondary_customer",
                    extra={"existing_customer_id": existing_customer_id, "primary_customer": guest_id},
                )

            updated = await self._customers.update_customer_stripe_id(request.user_id, guest_id)
            if updated.success:
                undo.push(
                    "repoint_profile",
                    lambda: self._store.set_profile_customer_id(request.user_id, existing_customer_id),
                )
            else:
                logger.warning(
                    "reconciliation_profile_update_failed",
                    extra={"user_id": request.user_id, "error": updated.error},
                )
            await self._track_customer(request, guest_id)

            await self._sync.sync_customer(guest_id)
        except Exception as e:
            return await self._fail_and_unwind(
                request, info, undo, e, customer_id=existing_customer_id,
                default_message="Failed to link subscription to your account",
            )

        await self._audit(
            request,
            OP_LINK_GUEST,
            "success",
            stripe_customer_id=guest_id,
            subscription_id=subscription_id,
            additional_data={
                "guest_customer": guest_id,
                "existing_customer": existing_customer_id,
                "method": "customer_linking",
            },
        )
        logger.info(
            "reconciliation_succeeded",
            extra={"user_id": request.user_id, "stripe_customer_id": guest_id, "branch": "existing_customer"},
        )
        return LinkedExisting(
            message="Successfully linked your subscription to your account",
            subscription_linked=True,
        )

    async def _fail_and_unwind(
        self,
        request: ReconciliationRequest,
        info: GuestPaymentInfo,
        undo: Compensations,
        exc: Exception,
        *,
        customer_id: str,
        default_message: str,
    ) -> Failed:
        if isinstance(exc, StepFailed):
            message, error = exc.message, exc.error
            logger.warning("reconciliation_step_failed", extra={"error": error})
        else:
            message, error = default_message, str(exc) or "Unknown error"
            logger.exception("reconciliation_failed", extra={"session_id": request.session_id})

        completed = undo.steps
        not_undone = await undo.unwind()
        await self._audit(
            request,
            OP_LINK_GUEST,
            "failed",
            stripe_customer_id=customer_id,
            subscription_id=info.subscription_id,
            error_message=error,
            additional_data={"rolled_back": completed, "rollback_failed": not_undone},
        )
        return Failed(message=message, error=error)

    async def handle_duplicate_email_scenario(
        self,
        email: str,
        new_user_id: str,
        session_id: str,
        *,
        stripe_customer_id: Optional[str] = None,
    ) -> RequiresReview:
        """Record a duplicate-email conflict for manual review."""
        logger.warning(
            "reconciliation_duplicate_email",
            extra={"user_id": new_user_id, "session_id": session_id},
        )
        await self._audit(
            ReconciliationRequest(session_id=session_id, user_email=email, user_id=new_user_id),
            OP_DUPLICATE_EMAIL,
            "requires_review",
            stripe_customer_id=stripe_customer_id,
            error_message="Multiple accounts detected with same email",
        )
        return RequiresReview(
            message="Multiple accounts detected with this email. Please contact support for assistance.",
            error="Duplicate email detected",
            reason=DUPLICATE_EMAIL,
        )

    async def get_reconciliation_history(self, user_id: str) -> HistoryResult:
        try:
            entries = await self._store.list_reconciliation_logs(user_id)
        except Exception as e:
            logger.exception("reconciliation_history_failed", extra={"user_id": user_id})
            return HistoryResult(success=False, error=str(e))
        return HistoryResult(success=True, operations=[entry.to_dict() for entry in entries])

    async def _audit(
        self,
        request: ReconciliationRequest,
        operation_type: str,
        status: str,
        *,
        stripe_customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        error_message: Optional[str] = None,
        additional_data: Optional[dict[str, Any]] = None,
    ) -> None:
        entry = ReconciliationLogEntry(
            operation_type=operation_type,
            user_id=request.user_id,
            session_id=request.session_id,
            email=request.user_email,
            status=status,  # type: ignore[arg-type]
            stripe_customer_id=stripe_customer_id,
            subscription_id=subscription_id,
            error_message=error_message,
            additional_data=additional_data or {},
            created_at=self._clock(),
        )
        logger.info("reconciliation_log", extra=entry.to_dict())
        observe_reconciliation(operation_type, status)
        try:
            await self._store.add_reconciliation_log(entry)
        except Exception:
            # The audit trail must never fail the reconciliation itself.
            logger.exception("reconciliation_log_write_failed", extra={"session_id": request.session_id})
