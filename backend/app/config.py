from __future__ import annotations

import os
import threading
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError


_ENV_LOCK = threading.Lock()
_SETTINGS: "Settings | None" = None


def _read_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    value = value.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    return default


class Settings(BaseModel):
    """Application configuration loaded from environment variables.

    Environment precedence is:

    1. Canonical env var names (e.g. POSTGRES_DSN, SUPABASE_URL).
    2. Legacy aliases (e.g. DATABASE_URL, NEXT_PUBLIC_SUPABASE_URL) when
       canonical is unset.
    3. Built-in defaults where defined.
    """

    # Core
    APP_ENV: str = Field(default="local")
    SERVICE_NAME: str = Field(default="api")
    LOG_LEVEL: str = Field(default="INFO")

    # Database
    POSTGRES_DSN: str
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=20)
    DB_POOL_TIMEOUT: float = Field(default=30.0)

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    SAASKIT_REDIS_PREFIX: str = Field(default="saaskit")
    REDIS_POOL_SIZE: int = Field(default=10)
    REDIS_MAX_CONNECTIONS: Optional[int] = Field(default=None)

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_API_VERSION: Optional[str] = Field(default=None)

    # Supabase
    SUPABASE_URL: Optional[str] = Field(default=None)
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = Field(default=None)
    SUPABASE_JWT_AUDIENCE: Optional[str] = Field(default="authenticated")

    # Account linking
    LINKING_TOKEN_SECRET: Optional[str] = Field(default=None)
    LINKING_TOKEN_TTL_SECONDS: int = Field(default=600)

    # Guest checkout
    GUEST_SESSION_TTL_HOURS: int = Field(default=24)
    GUEST_CLEANUP_PROBABILITY: float = Field(default=0.01)
    GUEST_CLEANUP_BATCH_SIZE: int = Field(default=100)
    RECONCILIATION_LOCK_TTL_SECONDS: int = Field(default=30)

    # Circuit breaker defaults
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5)
    CIRCUIT_BREAKER_ROLLING_WINDOW: int = Field(default=60)
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: int = Field(default=30)
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = Field(default=2)

    # Feature flags
    FF_ACCOUNT_LINKING_ENABLED: bool = Field(default=False)
    FF_GUEST_CHECKOUT_ENABLED: bool = Field(default=True)

    class Config:
        frozen = True

    @property
    def env(self) -> str:
        """Canonical environment label used for metrics and namespacing."""
        return self.APP_ENV

    @property
    def service(self) -> str:
        """Canonical service name label used for metrics."""
        return self.SERVICE_NAME

    @property
    def supabase_jwks_url(self) -> Optional[str]:
        if not self.SUPABASE_URL:
            return None
        return f"{self.SUPABASE_URL.rstrip('/')}/auth/v1/.well-known/jwks.json"

    @property
    def supabase_issuer(self) -> Optional[str]:
        if not self.SUPABASE_URL:
            return None
        return f"{self.SUPABASE_URL.rstrip('/')}/auth/v1"

    @property
    def linking_token_secret(self) -> Optional[str]:
        """Secret used to sign account-linking tokens.

        Falls back to the service role key, which is already a server-only
        secret, so linking works without extra configuration.
        """
        return self.LINKING_TOKEN_SECRET or self.SUPABASE_SERVICE_ROLE_KEY

    @classmethod
    def from_env(cls) -> "Settings":
        """Build Settings from environment with support for legacy aliases.

        Canonical names are preferred; legacy aliases are only consulted if the
        canonical variable is unset.
        """

        env = os.environ

        def pick(
            primary: str,
            *aliases: str,
            default: Optional[str] = None,
        ) -> Optional[str]:
            if primary in env and env[primary]:
                return env[primary]
            for name in aliases:
                if name in env and env[name]:
                    return env[name]
            return default

        data: Dict[str, Any] = {}

        # Core
        data["APP_ENV"] = (pick("APP_ENV", "ENV", default="local") or "local").strip()
        data["SERVICE_NAME"] = (
            pick("SERVICE_NAME", default="api") or "api"
        ).strip()
        data["LOG_LEVEL"] = (
            pick("LOG_LEVEL", default="INFO") or "INFO"
        ).strip()

        # Database
        dsn = pick("POSTGRES_DSN", "DATABASE_URL")
        if not dsn:
            raise RuntimeError(
                "POSTGRES_DSN (or legacy DATABASE_URL) must be set in the environment."
            )
        data["POSTGRES_DSN"] = dsn
        data["DB_POOL_SIZE"] = int(pick("DB_POOL_SIZE", default="10") or "10")
        data["DB_MAX_OVERFLOW"] = int(pick("DB_MAX_OVERFLOW", default="20") or "20")
        data["DB_POOL_TIMEOUT"] = float(
            pick("DB_POOL_TIMEOUT", default="30.0") or "30.0"
        )

        # Redis
        data["REDIS_URL"] = (
            pick("REDIS_URL", default="redis://localhost:6379/0")
            or "redis://localhost:6379/0"
        )
        data["SAASKIT_REDIS_PREFIX"] = (
            pick("SAASKIT_REDIS_PREFIX", default="saaskit") or "saaskit"
        )
        data["REDIS_POOL_SIZE"] = int(
            pick("REDIS_POOL_SIZE", default="10") or "10"
        )
        max_conns_raw = pick("REDIS_MAX_CONNECTIONS", default="")
        data["REDIS_MAX_CONNECTIONS"] = (
            int(max_conns_raw) if max_conns_raw not in ("", None) else None
        )

        # Stripe
        data["STRIPE_SECRET_KEY"] = pick("STRIPE_SECRET_KEY")
        data["STRIPE_WEBHOOK_SECRET"] = pick("STRIPE_WEBHOOK_SECRET")
        data["STRIPE_API_VERSION"] = pick("STRIPE_API_VERSION")

        # Supabase
        data["SUPABASE_URL"] = pick("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL")
        data["SUPABASE_SERVICE_ROLE_KEY"] = pick("SUPABASE_SERVICE_ROLE_KEY")
        data["SUPABASE_JWT_AUDIENCE"] = pick(
            "SUPABASE_JWT_AUDIENCE", default="authenticated"
        )

        # Account linking
        data["LINKING_TOKEN_SECRET"] = pick("LINKING_TOKEN_SECRET")
        data["LINKING_TOKEN_TTL_SECONDS"] = int(
            pick("LINKING_TOKEN_TTL_SECONDS", default="600") or "600"
        )

        # Guest checkout
        data["GUEST_SESSION_TTL_HOURS"] = int(
            pick("GUEST_SESSION_TTL_HOURS", default="24") or "24"
        )
        data["GUEST_CLEANUP_PROBABILITY"] = float(
            pick("GUEST_CLEANUP_PROBABILITY", default="0.01") or "0.01"
        )
        data["GUEST_CLEANUP_BATCH_SIZE"] = int(
            pick("GUEST_CLEANUP_BATCH_SIZE", default="100") or "100"
        )
        data["RECONCILIATION_LOCK_TTL_SECONDS"] = int(
            pick("RECONCILIATION_LOCK_TTL_SECONDS", default="30") or "30"
        )

        # Circuit breaker
        data["CIRCUIT_BREAKER_FAILURE_THRESHOLD"] = int(
            pick("CIRCUIT_BREAKER_FAILURE_THRESHOLD", default="5") or "5"
        )
        data["CIRCUIT_BREAKER_ROLLING_WINDOW"] = int(
            pick("CIRCUIT_BREAKER_ROLLING_WINDOW", default="60") or "60"
        )
        data["CIRCUIT_BREAKER_RECOVERY_TIMEOUT"] = int(
            pick("CIRCUIT_BREAKER_RECOVERY_TIMEOUT", default="30") or "30"
        )
        data["CIRCUIT_BREAKER_SUCCESS_THRESHOLD"] = int(
            pick("CIRCUIT_BREAKER_SUCCESS_THRESHOLD", default="2") or "2"
        )

        # Feature flags. Account linking needs admin access to Supabase, so it
        # is on by default only when the service role key is present.
        data["FF_ACCOUNT_LINKING_ENABLED"] = _read_bool(
            pick("FF_ACCOUNT_LINKING_ENABLED", default=None),
            default=bool(data["SUPABASE_SERVICE_ROLE_KEY"]),
        )
        data["FF_GUEST_CHECKOUT_ENABLED"] = _read_bool(
            pick("FF_GUEST_CHECKOUT_ENABLED", default=None),
            default=True,
        )

        try:
            return cls(**data)
        except ValidationError as exc:
            raise RuntimeError(f"Invalid configuration: {exc}") from exc


def get_settings() -> Settings:
    """Return a cached Settings instance (process-wide singleton).

    The first call reads from environment; subsequent calls return the same
    immutable Settings object.
    """
    global _SETTINGS
    if _SETTINGS is None:
        with _ENV_LOCK:
            if _SETTINGS is None:
                _SETTINGS = Settings.from_env()
    return _SETTINGS
