from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request

from backend.app.auth import UserPrincipal, get_current_user_optional
from backend.app.auth.linking_token import generate_linking_token, verify_linking_token
from backend.app.container import ServiceContainer
from backend.app.deps import get_container
from backend.app.errors import (
    ApiError,
    BadRequest,
    Forbidden,
    ServiceUnavailable,
    Unauthorized,
)
from backend.app.routes.payloads import read_json_object
from backend.app.utils.feature_flags import is_account_linking_enabled

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["accounts"])


@router.post("/link-account")
async def link_account(
    request: Request,
    user: Optional[UserPrincipal] = Depends(get_current_user_optional),
    container: ServiceContainer = Depends(get_container),
):
    """Check for, or perform, an OAuth -> email/password account link."""
    try:
        linking = container.account_linking
        secret = container.settings.linking_token_secret
        if not is_account_linking_enabled(container.settings) or linking is None or not secret:
            raise ServiceUnavailable("Account linking is not available")

        body = await read_json_object(request)
        action = body.get("action")

        if action == "check":
            email, provider = body.get("email"), body.get("provider")
            if not email or not provider:
                raise BadRequest("Email and provider are required")

            result = await linking.check_account_linking(email, provider)
            payload: dict[str, Any] = result.as_dict()
            if result.needs_linking:
                payload["token"] = generate_linking_token(
                    email,
                    provider,
                    secret=secret,
                    ttl_seconds=container.settings.LINKING_TOKEN_TTL_SECONDS,
                )
            return {"result": payload}

        if action == "link":
            token = body.get("token")
            oauth_user_id = body.get("oauthUserId")
            provider = body.get("provider")
            if not token or not oauth_user_id or not provider:
                raise BadRequest("Token, OAuth user ID, and provider are required")

            token_data = verify_linking_token(token, secret=secret)
            if token_data is None:
                raise BadRequest("Invalid or expired linking token")

            if user is None:
                raise Unauthorized("Authentication required")
            if user.id != oauth_user_id:
                raise Forbidden("User ID mismatch")
            if user.email.lower() != token_data.email.lower():
                raise Forbidden("Linking token was issued for a different email")

            check = await linking.check_account_linking(token_data.email, token_data.provider)
            if not check.needs_linking or not check.existing_user_id:
                raise BadRequest("Account linking not required or existing user not found")

            linked = await linking.link_oauth_to_existing_account(
                check.existing_user_id,
                user.id,
                provider,
                oauth_user_metadata=user.user_metadata,
            )
            if not linked.success:
                raise ApiError(linked.error or "Failed to link accounts")

            return {
                "success": True,
                "linkedUserId": linked.linked_user_id,
                "message": "Accounts linked successfully",
            }

        raise BadRequest("Invalid action")
    except ApiError:
        raise
    except Exception:
        logger.exception("link_account_failed")
        raise ApiError("Internal server error")


@router.post("/create-customer")
async def create_customer(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """Ensure a Stripe customer and a profile exist for a new user."""
    try:
        body = await read_json_object(request)
        user_id, email = body.get("userId"), body.get("email")
        if not user_id or not email:
            raise BadRequest("Missing required fields: userId and email")

        result = await container.customers.ensure_customer_exists(user_id, email, body.get("fullName"))
        if not result.success:
            logger.error("create_customer_failed", extra={"user_id": user_id, "error": result.error})
            raise ApiError("Failed to create customer and profile")

        logger.info(
            "create_customer_succeeded",
            extra={
                "user_id": user_id,
                "stripe_customer_id": result.stripe_customer_id,
                "is_new_customer": result.is_new_customer,
                "is_new_profile": result.is_new_profile,
            },
        )
        return {
            "success": True,
            "message": (
                "Customer and profile created successfully"
                if result.is_new_profile
                else "Customer and profile already exist"
            ),
            "data": {
                "stripeCustomerId": result.stripe_customer_id,
                "profileId": result.profile.id if result.profile else None,
                "isNewCustomer": result.is_new_customer,
                "isNewProfile": result.is_new_profile,
            },
        }
    except ApiError:
        raise
    except Exception:
        logger.exception("create_customer_unexpected_error")
        raise ApiError("Internal server error")
