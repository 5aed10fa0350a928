"""FastAPI authentication dependencies.

Requests are authenticated with the Supabase access token sent as a Bearer
token.

Usage:
    @router.post("/protected")
    async def protected_endpoint(
        user: UserPrincipal = Depends(get_current_user),
    ):
        return {"user_id": user.id}
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.errors import Unauthorized

from .jwt_validator import (
    JWTValidationError,
    UserPrincipal,
    validate_jwt_async,
)

logger = logging.getLogger(__name__)


# HTTPBearer extracts the token from the Authorization header
_bearer_scheme = HTTPBearer(
    scheme_name="Bearer",
    description="Supabase JWT token",
    auto_error=False,  # missing tokens are handled below
)


_FAILURE_DETAILS = {
    "expired": "Token has expired",
    "invalid_signature": "Invalid token signature",
    "invalid_audience": "Token not valid for this service",
    "invalid_issuer": "Token issuer not trusted",
}


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> UserPrincipal:
    """Authenticate the request against Supabase JWKS.

    Raises:
        Unauthorized: 401 if the token is missing or invalid
    """
    if not credentials or not credentials.credentials:
        raise Unauthorized("Authentication required")

    settings = request.app.state.container.settings
    try:
        user = await validate_jwt_async(
            credentials.credentials,
            jwks_url=settings.supabase_jwks_url,
            expected_issuer=settings.supabase_issuer,
            expected_audience=settings.SUPABASE_JWT_AUDIENCE,
        )
    except JWTValidationError as e:
        logger.info("authentication_failed", extra={"reason": e.reason})
        raise Unauthorized(_FAILURE_DETAILS.get(e.reason, "Authentication failed"))

    # Attach user to request state for logging
    request.state.user_id = user.id
    return user


async def get_current_user_optional(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Optional[UserPrincipal]:
    """Return the current user if the request is authenticated, else None."""
    if not credentials or not credentials.credentials:
        return None

    try:
        return await get_current_user(request, credentials)
    except Unauthorized:
        return None
