"""Authentication for the billing backend.

Supabase issues the access tokens; this package validates them and talks to
the Supabase auth admin API for account linking.
"""
from .dependencies import (
    get_current_user,
    get_current_user_optional,
)
from .jwt_validator import (
    JWKSCache,
    JWTValidationError,
    UserPrincipal,
    refresh_jwks_if_needed,
    validate_jwt_async,
)

__all__ = [
    # Dependencies
    "get_current_user",
    "get_current_user_optional",
    # JWT Validation
    "JWKSCache",
    "JWTValidationError",
    "UserPrincipal",
    "refresh_jwks_if_needed",
    "validate_jwt_async",
]
