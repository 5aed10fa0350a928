"""Supabase JWT validation with JWKS caching.

This module implements JWT validation for Supabase-issued tokens with:
- JWKS fetching with timeout
- In-memory key caching with TTL
- Fallback to cached keys when the JWKS endpoint is unavailable

Security considerations:
- Never logs tokens or keys
- Validates iss, aud, exp, nbf claims
- Only asymmetric algorithms are accepted
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidKeyError,
    InvalidSignatureError,
    InvalidTokenError,
    PyJWKError,
)

logger = logging.getLogger(__name__)

_ALLOWED_ALGORITHMS = ("RS256", "RS384", "RS512", "ES256", "ES384")


# =============================================================================
# Exceptions
# =============================================================================

class JWTValidationError(Exception):
    """Raised when token validation fails."""

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(reason)


# =============================================================================
# User Principal
# =============================================================================

@dataclass
class UserPrincipal:
    """An authenticated Supabase user derived from JWT claims.

    Attributes:
        id: Supabase auth user id (sub claim)
        email: User's email address
        app_metadata: Provider information maintained by Supabase
        user_metadata: Profile data supplied at signup or by OAuth providers
        raw_claims: Original JWT claims
    """
    id: str
    email: str
    app_metadata: dict[str, Any] = field(default_factory=dict)
    user_metadata: dict[str, Any] = field(default_factory=dict)
    raw_claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "UserPrincipal":
        user_id = claims.get("sub")
        if not user_id:
            raise JWTValidationError("missing_sub", "Token missing 'sub' claim")

        return cls(
            id=str(user_id),
            email=claims.get("email", ""),
            app_metadata=claims.get("app_metadata") or {},
            user_metadata=claims.get("user_metadata") or {},
            raw_claims=claims,
        )


# =============================================================================
# JWKS Cache
# =============================================================================

@dataclass
class JWKSCache:
    """Thread-safe JWKS cache with TTL support."""

    keys: dict[str, Any] = field(default_factory=dict)
    fetched_at: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock)

    ttl_seconds: float = 300.0
    stale_ttl_seconds: float = 3600.0

    def is_fresh(self) -> bool:
        return time.time() - self.fetched_at < self.ttl_seconds

    def is_usable(self) -> bool:
        """Check if cache can be used as fallback (within stale TTL)."""
        return (
            bool(self.keys) and
            time.time() - self.fetched_at < self.stale_ttl_seconds
        )

    def update(self, keys: dict[str, Any]) -> None:
        with self.lock:
            self.keys = keys
            self.fetched_at = time.time()

    def get_key(self, kid: str) -> Optional[Any]:
        with self.lock:
            return self.keys.get(kid)


_jwks_cache = JWKSCache()


# =============================================================================
# JWKS Fetching
# =============================================================================

async def _fetch_jwks(jwks_url: str, timeout: float = 5.0) -> dict[str, Any]:
    """Fetch JWKS and index the keys by key id.

    Raises:
        JWTValidationError: If fetch fails
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(jwks_url)
            response.raise_for_status()
            data = response.json()
    except httpx.TimeoutException:
        logger.warning("jwks_fetch_timeout", extra={"url": jwks_url})
        raise JWTValidationError("jwks_timeout", "JWKS fetch timed out")
    except httpx.HTTPStatusError as e:
        logger.warning("jwks_fetch_http_error", extra={"status": e.response.status_code})
        raise JWTValidationError("jwks_http_error", f"HTTP {e.response.status_code}")
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("jwks_fetch_error", extra={"error": str(e)})
        raise JWTValidationError("jwks_error", str(e))

    keys = {k["kid"]: k for k in data.get("keys", []) if k.get("kid")}
    if not keys:
        raise JWTValidationError("no_keys", "JWKS response contained no keys")
    return keys


async def refresh_jwks_if_needed(jwks_url: Optional[str]) -> None:
    """Refresh the JWKS cache when stale, falling back to cached keys."""
    if not jwks_url or _jwks_cache.is_fresh():
        return

    try:
        keys = await _fetch_jwks(jwks_url)
        _jwks_cache.update(keys)
        logger.info("jwks_refreshed", extra={"key_count": len(keys)})
    except JWTValidationError:
        if _jwks_cache.is_usable():
            logger.warning(
                "jwks_refresh_failed_using_cache",
                extra={"cache_age_seconds": time.time() - _jwks_cache.fetched_at}
            )
        else:
            logger.error("jwks_refresh_failed_cache_stale")
            raise


def get_public_key(kid: str) -> Any:
    key_data = _jwks_cache.get_key(kid)
    if not key_data:
        raise JWTValidationError("unknown_kid", f"Unknown key ID: {kid}")

    try:
        return jwt.PyJWK(key_data).key
    except (PyJWKError, InvalidKeyError) as e:
        raise JWTValidationError("invalid_key", f"Could not parse key: {e}")


# =============================================================================
# Token Validation
# =============================================================================

async def validate_jwt_async(
    token: str,
    *,
    jwks_url: Optional[str] = None,
    expected_issuer: Optional[str] = None,
    expected_audience: Optional[str] = None,
) -> UserPrincipal:
    """Validate a Supabase access token and return its principal.

    Raises:
        JWTValidationError: If validation fails
    """
    await refresh_jwks_if_needed(jwks_url)

    try:
        unverified_header = jwt.get_unverified_header(token)
    except DecodeError:
        raise JWTValidationError("malformed_token", "Could not decode token header")

    kid = unverified_header.get("kid")
    if not kid:
        raise JWTValidationError("missing_kid", "Token header missing 'kid'")

    alg = unverified_header.get("alg", "RS256")
    if alg not in _ALLOWED_ALGORITHMS:
        raise JWTValidationError("invalid_algorithm", f"Unsupported algorithm: {alg}")

    public_key = get_public_key(kid)

    decode_kwargs: dict[str, Any] = {
        "algorithms": [alg],
        "options": {
            "verify_signature": True,
            "verify_exp": True,
            "verify_nbf": True,
            "verify_iat": True,
            "require": ["exp", "sub"],
        },
    }
    if expected_issuer:
        decode_kwargs["issuer"] = expected_issuer
    if expected_audience:
        decode_kwargs["audience"] = expected_audience

    try:
        claims = jwt.decode(token, key=public_key, **decode_kwargs)
    except ExpiredSignatureError:
        raise JWTValidationError("expired", "Token has expired")
    except InvalidSignatureError:
        raise JWTValidationError("invalid_signature", "Token signature is invalid")
    except InvalidIssuerError:
        raise JWTValidationError("invalid_issuer", "Token issuer is invalid")
    except InvalidAudienceError:
        raise JWTValidationError("invalid_audience", "Token audience is invalid")
    except InvalidTokenError as e:
        raise JWTValidationError("invalid_token", str(e))

    principal = UserPrincipal.from_claims(claims)
    logger.debug("jwt_validation_success", extra={"user_id": principal.id})
    return principal
