"""Short-lived signed tokens that authorise an OAuth account link."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

import jwt
from jwt.exceptions import InvalidTokenError

_ALGORITHM = "HS256"
_PURPOSE = "account_link"


@dataclass
class LinkingTokenData:
    email: str
    provider: str
    issued_at: int


def generate_linking_token(
    email: str,
    provider: str,
    *,
    secret: str,
    ttl_seconds: int = 600,
    now: Optional[float] = None,
) -> str:
    issued_at = int(now if now is not None else time.time())
    claims = {
        "email": email,
        "provider": provider,
        "purpose": _PURPOSE,
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
    }
    return jwt.encode(claims, secret, algorithm=_ALGORITHM)


def verify_linking_token(token: str, *, secret: str) -> Optional[LinkingTokenData]:
    """Decode a linking token, returning None if it is invalid or expired."""
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[_ALGORITHM],
            options={"require": ["exp", "iat", "email", "provider"]},
        )
    except InvalidTokenError:
        return None

    if claims.get("purpose") != _PURPOSE:
        return None
    email = claims.get("email")
    provider = claims.get("provider")
    if not email or not provider:
        return None
    return LinkingTokenData(email=email, provider=provider, issued_at=int(claims["iat"]))
