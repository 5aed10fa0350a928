"""Linking OAuth sign-ins to existing email/password accounts.

When somebody signs in with an OAuth provider using an email that already
belongs to an email/password account, the OAuth identity is merged into the
existing user and the freshly created OAuth user is removed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Optional

from backend.app.auth.supabase_admin import SupabaseAdminClient, SupabaseAdminError

logger = logging.getLogger(__name__)

ConflictType = Literal["email_exists", "oauth_exists", "multiple_providers"]


@dataclass
class AccountLinkingResult:
    needs_linking: bool
    existing_user_id: Optional[str] = None
    existing_auth_method: Optional[Literal["email", "oauth"]] = None
    conflict_type: Optional[ConflictType] = None
    message: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"needsLinking": self.needs_linking}
        if self.existing_user_id:
            data["existingUserId"] = self.existing_user_id
        if self.existing_auth_method:
            data["existingAuthMethod"] = self.existing_auth_method
        if self.conflict_type:
            data["conflictType"] = self.conflict_type
        if self.message:
            data["message"] = self.message
        return data


@dataclass
class LinkAccountsResult:
    success: bool
    linked_user_id: Optional[str] = None
    error: Optional[str] = None


class AccountLinkingService:
    def __init__(self, admin: SupabaseAdminClient) -> None:
        self._admin = admin

    async def check_account_linking(self, email: str, provider: str) -> AccountLinkingResult:
        """Classify how an OAuth sign-in relates to existing accounts.

        Lookup failures are treated as "no linking needed" so that sign-in
        is never blocked by the admin API.
        """
        try:
            users = await self._admin.list_users()
        except SupabaseAdminError:
            logger.exception("account_linking_lookup_failed", extra={"provider": provider})
            return AccountLinkingResult(needs_linking=False)

        wanted = email.lower()
        matches = [u for u in users if (u.get("email") or "").lower() == wanted]

        if not matches:
            return AccountLinkingResult(needs_linking=False)

        if len(matches) == 1 and matches[0].get("id"):
            existing = matches[0]
            providers = (existing.get("app_metadata") or {}).get("providers") or []
            has_email = "email" in providers
            has_oauth = provider in providers

            if has_email and not has_oauth:
                return AccountLinkingResult(
                    needs_linking=True,
                    existing_user_id=existing["id"],
                    existing_auth_method="email",
                    conflict_type="email_exists",
                    message=(
                        "An account with this email already exists. "
                        f"Would you like to link your {provider} account?"
                    ),
                )
            if has_oauth and not has_email:
                return AccountLinkingResult(
                    needs_linking=False,
                    existing_user_id=existing["id"],
                    existing_auth_method="oauth",
                    conflict_type="oauth_exists",
                    message=f"You've already signed up with {provider}. Please sign in instead.",
                )
            if has_oauth and has_email:
                return AccountLinkingResult(
                    needs_linking=False,
                    existing_user_id=existing["id"],
                    message=f"Your {provider} account is already linked. Please sign in.",
                )
            return AccountLinkingResult(needs_linking=False)

        if len(matches) == 1:
            return AccountLinkingResult(needs_linking=False)

        return AccountLinkingResult(
            needs_linking=False,
            conflict_type="multiple_providers",
            message="Multiple accounts found with this email. Please contact support.",
        )

    async def link_oauth_to_existing_account(
        self,
        existing_user_id: str,
        oauth_user_id: str,
        provider: str,
        oauth_user_metadata: Optional[dict[str, Any]] = None,
    ) -> LinkAccountsResult:
        try:
            existing = await self._admin.get_user(existing_user_id)
        except SupabaseAdminError:
            logger.exception("account_linking_get_user_failed", extra={"user_id": existing_user_id})
            return LinkAccountsResult(success=False, error="Account linking failed")
        if not existing:
            return LinkAccountsResult(success=False, error="Existing user not found")

        app_metadata = dict(existing.get("app_metadata") or {})
        providers: list[str] = []
        for name in [*(app_metadata.get("providers") or []), provider]:
            if name not in providers:
                providers.append(name)
        app_metadata["providers"] = providers

        # Existing values win over whatever the OAuth provider supplied.
        user_metadata = {
            **(oauth_user_metadata or {}),
            **(existing.get("user_metadata") or {}),
        }

        try:
            await self._admin.update_user(
                existing_user_id,
                app_metadata=app_metadata,
                user_metadata=user_metadata,
            )
        except SupabaseAdminError:
            logger.exception("account_linking_update_failed", extra={"user_id": existing_user_id})
            return LinkAccountsResult(success=False, error="Failed to link accounts")

        try:
            await self._admin.delete_user(oauth_user_id)
        except SupabaseAdminError:
            logger.warning(
                "account_linking_oauth_user_delete_failed",
                extra={"oauth_user_id": oauth_user_id},
            )

        logger.info(
            "accounts_linked",
            extra={"user_id": existing_user_id, "provider": provider},
        )
        return LinkAccountsResult(success=True, linked_user_id=existing_user_id)
