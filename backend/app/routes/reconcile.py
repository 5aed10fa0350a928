from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from backend.app.auth import UserPrincipal, get_current_user_optional
from backend.app.billing.reconciliation import RequiresReview
from backend.app.billing.schemas import ReconciliationRequest
from backend.app.container import ServiceContainer
from backend.app.deps import get_container
from backend.app.errors import ApiError, BadRequest, Forbidden, Unauthorized
from backend.app.routes.payloads import read_json_object

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["reconciliation"])


@router.post("/reconcile-account")
async def reconcile_account(
    request: Request,
    user: Optional[UserPrincipal] = Depends(get_current_user_optional),
    container: ServiceContainer = Depends(get_container),
):
    """Link a guest checkout to the signed-in user's account."""
    try:
        if user is None:
            raise Unauthorized("Authentication required")

        body = await read_json_object(request)
        session_id = body.get("sessionId")
        user_email = body.get("userEmail")
        if not session_id or not user_email:
            raise BadRequest("Missing required fields: sessionId and userEmail")

        if user.email != user_email:
            raise Forbidden("Email mismatch with authenticated user")

        logger.info(
            "reconcile_account_requested",
            extra={"user_id": user.id, "session_id": session_id},
        )
        service = container.reconciliation
        result = await service.reconcile_guest_payment(
            ReconciliationRequest(
                session_id=session_id,
                user_email=user_email,
                user_id=user.id,
                stripe_customer_id=body.get("stripeCustomerId"),
            )
        )

        if not result.success:
            if isinstance(result, RequiresReview):
                return JSONResponse(
                    status_code=409,
                    content={**result.as_dict(), "requiresSupport": True},
                )
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "message": result.message or "Failed to reconcile payment",
                    "error": result.error,
                },
            )

        consumed = await container.guest_sessions.mark_consumed(session_id, user.id)
        if not consumed.success:
            logger.warning(
                "reconcile_mark_consumed_failed",
                extra={"session_id": session_id, "error": consumed.error},
            )

        logger.info("reconcile_account_succeeded", extra={"user_id": user.id, "session_id": session_id})
        return result.as_dict()
    except ApiError:
        raise
    except Exception:
        logger.exception("reconcile_account_failed")
        raise ApiError("Internal server error during reconciliation")
