from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx

from backend.app.auth.account_linking import AccountLinkingService
from backend.app.auth.supabase_admin import SupabaseAdminClient


class FakeAuthAdmin:
    """Serves ``/auth/v1/admin/users`` from memory."""

    def __init__(self, users: list[dict[str, Any]]) -> None:
        self.users = {u["id"]: u for u in users}
        self.requests: list[tuple[str, str]] = []
        self.fail_methods: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        assert request.headers["apikey"] == "service-role-key"
        assert request.headers["authorization"] == "Bearer service-role-key"
        if request.method in self.fail_methods:
            return httpx.Response(500, json={"msg": "boom"})

        if path == "/auth/v1/admin/users":
            page = int(request.url.params["page"])
            per_page = int(request.url.params["per_page"])
            users = list(self.users.values())[(page - 1) * per_page: page * per_page]
            return httpx.Response(200, json={"users": users})

        user_id = path.rsplit("/", 1)[-1]
        if user_id not in self.users:
            return httpx.Response(404, json={"msg": "User not found"})
        if request.method == "GET":
            return httpx.Response(200, json=self.users[user_id])
        if request.method == "PUT":
            self.users[user_id].update(json.loads(request.content))
            return httpx.Response(200, json=self.users[user_id])
        if request.method == "DELETE":
            del self.users[user_id]
            return httpx.Response(200)
        return httpx.Response(405)


def _user(user_id: str, email: str, providers: list[str], **metadata: Any) -> dict[str, Any]:
    return {
        "id": user_id,
        "email": email,
        "app_metadata": {"providers": providers},
        "user_metadata": metadata,
    }


def _service(backend: FakeAuthAdmin, per_page: int = 1000) -> AccountLinkingService:
    admin = SupabaseAdminClient(
        "https://project.supabase.co",
        "service-role-key",
        per_page=per_page,
        transport=httpx.MockTransport(backend),
    )
    return AccountLinkingService(admin)


def _check(service: AccountLinkingService, email: str, provider: str = "google"):
    return asyncio.run(service.check_account_linking(email, provider))


def test_no_existing_account_needs_no_linking() -> None:
    result = _check(_service(FakeAuthAdmin([])), "new@example.com")

    assert result.needs_linking is False
    assert result.as_dict() == {"needsLinking": False}


def test_email_account_needs_linking() -> None:
    backend = FakeAuthAdmin([_user("u-email", "Person@Example.com", ["email"])])

    result = _check(_service(backend), "person@example.com")

    assert result.needs_linking is True
    assert result.existing_user_id == "u-email"
    assert result.conflict_type == "email_exists"
    assert result.as_dict()["existingAuthMethod"] == "email"
    assert "google" in result.message


def test_oauth_only_account_asks_to_sign_in() -> None:
    backend = FakeAuthAdmin([_user("u-oauth", "person@example.com", ["google"])])

    result = _check(_service(backend), "person@example.com")

    assert result.needs_linking is False
    assert result.conflict_type == "oauth_exists"


def test_already_linked_account() -> None:
    backend = FakeAuthAdmin([_user("u-both", "person@example.com", ["email", "google"])])

    result = _check(_service(backend), "person@example.com")

    assert result.needs_linking is False
    assert result.existing_user_id == "u-both"
    assert result.conflict_type is None
    assert "already linked" in result.message


def test_multiple_accounts_with_same_email() -> None:
    backend = FakeAuthAdmin(
        [
            _user("u-1", "person@example.com", ["email"]),
            _user("u-2", "person@example.com", ["github"]),
        ]
    )

    result = _check(_service(backend), "person@example.com")

    assert result.needs_linking is False
    assert result.conflict_type == "multiple_providers"


def test_user_listing_follows_pages() -> None:
    users = [_user(f"u-{i}", f"user{i}@example.com", ["email"]) for i in range(5)]
    backend = FakeAuthAdmin(users)

    result = _check(_service(backend, per_page=2), "user4@example.com")

    assert result.existing_user_id == "u-4"
    assert [p for m, p in backend.requests if m == "GET"].count("/auth/v1/admin/users") == 3


def test_admin_api_failure_does_not_block_sign_in() -> None:
    backend = FakeAuthAdmin([_user("u-email", "person@example.com", ["email"])])
    backend.fail_methods.add("GET")

    result = _check(_service(backend), "person@example.com")

    assert result.needs_linking is False


def test_link_merges_providers_and_deletes_oauth_user() -> None:
    backend = FakeAuthAdmin(
        [
            _user("u-email", "person@example.com", ["email"], full_name="Existing Name"),
            _user("u-oauth", "person@example.com", ["google"]),
        ]
    )

    result = asyncio.run(
        _service(backend).link_oauth_to_existing_account(
            "u-email",
            "u-oauth",
            "google",
            oauth_user_metadata={"full_name": "OAuth Name", "avatar_url": "https://img"},
        )
    )

    assert result.success
    assert result.linked_user_id == "u-email"
    existing = backend.users["u-email"]
    assert existing["app_metadata"]["providers"] == ["email", "google"]
    assert existing["user_metadata"] == {"full_name": "Existing Name", "avatar_url": "https://img"}
    assert "u-oauth" not in backend.users


def test_link_to_missing_user_fails() -> None:
    result = asyncio.run(
        _service(FakeAuthAdmin([])).link_oauth_to_existing_account("u-x", "u-oauth", "google")
    )

    assert not result.success
    assert result.error == "Existing user not found"


def test_link_update_failure_is_reported() -> None:
    backend = FakeAuthAdmin([_user("u-email", "person@example.com", ["email"])])
    backend.fail_methods.add("PUT")

    result = asyncio.run(
        _service(backend).link_oauth_to_existing_account("u-email", "u-oauth", "google")
    )

    assert not result.success
    assert result.error == "Failed to link accounts"


def test_link_survives_oauth_user_delete_failure() -> None:
    backend = FakeAuthAdmin([_user("u-email", "person@example.com", ["email", "google"])])

    # The OAuth user does not exist, so the delete returns 404.
    result = asyncio.run(
        _service(backend).link_oauth_to_existing_account("u-email", "u-gone", "google")
    )

    assert result.success
    assert backend.users["u-email"]["app_metadata"]["providers"] == ["email", "google"]
