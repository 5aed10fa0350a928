"""Supabase auth admin API client.

Uses the service role key, so it must only ever run server side.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from backend.app.config import Settings

logger = logging.getLogger(__name__)


class SupabaseAdminError(Exception):
    """Raised when the auth admin API rejects a request or is unreachable."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)


class SupabaseAdminClient:
    """Async client for ``/auth/v1/admin/users``."""

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        *,
        timeout: float = 10.0,
        per_page: int = 1000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/auth/v1/admin",
            headers={
                "apikey": service_role_key,
                "Authorization": f"Bearer {service_role_key}",
            },
            timeout=timeout,
            transport=transport,
        )
        self._per_page = per_page

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["SupabaseAdminClient"]:
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            return None
        return cls(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "supabase_admin_http_error",
                extra={"path": path, "status": e.response.status_code},
            )
            raise SupabaseAdminError("http_error", e.response.status_code) from e
        except httpx.HTTPError as e:
            logger.warning("supabase_admin_unreachable", extra={"path": path, "error": str(e)})
            raise SupabaseAdminError("unreachable") from e
        if not response.content:
            return None
        return response.json()

    async def list_users(self) -> list[dict[str, Any]]:
        """Return every auth user, following pagination."""
        users: list[dict[str, Any]] = []
        page = 1
        while True:
            data = await self._request(
                "GET", "/users", params={"page": page, "per_page": self._per_page}
            )
            batch = (data or {}).get("users") or []
            users.extend(batch)
            if len(batch) < self._per_page:
                return users
            page += 1

    async def get_user(self, user_id: str) -> Optional[dict[str, Any]]:
        try:
            return await self._request("GET", f"/users/{user_id}")
        except SupabaseAdminError as e:
            if e.status_code == 404:
                return None
            raise

    async def update_user(
        self,
        user_id: str,
        *,
        app_metadata: Optional[dict[str, Any]] = None,
        user_metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if app_metadata is not None:
            body["app_metadata"] = app_metadata
        if user_metadata is not None:
            body["user_metadata"] = user_metadata
        return await self._request("PUT", f"/users/{user_id}", json=body)

    async def delete_user(self, user_id: str) -> None:
        await self._request("DELETE", f"/users/{user_id}")
