from __future__ import annotations

import logging
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

from backend.app.auth import UserPrincipal, get_current_user_optional
from backend.app.auth.account_linking import AccountLinkingResult, LinkAccountsResult
from backend.app.auth.linking_token import generate_linking_token
from backend.app.main import create_app
from backend.app.tests.fakes import make_container, make_settings

SECRET = "linking-secret-for-tests-0123456789"


def _linking(
    check: Optional[AccountLinkingResult] = None,
    link: Optional[LinkAccountsResult] = None,
) -> MagicMock:
    service = MagicMock()
    service.check_account_linking = AsyncMock(return_value=check or AccountLinkingResult(needs_linking=False))
    service.link_oauth_to_existing_account = AsyncMock(
        return_value=link or LinkAccountsResult(success=True, linked_user_id="u-email")
    )
    return service


def _email_exists() -> AccountLinkingResult:
    return AccountLinkingResult(
        needs_linking=True,
        existing_user_id="u-email",
        existing_auth_method="email",
        conflict_type="email_exists",
        message="An account with this email already exists.",
    )


def _client(
    gateway,
    store,
    *,
    linking: Any = None,
    user: Optional[UserPrincipal] = None,
    **settings: Any,
) -> TestClient:
    container = make_container(
        gateway, store, settings=make_settings(**settings), account_linking=linking
    )
    app = create_app(container)
    app.dependency_overrides[get_current_user_optional] = lambda: user
    return TestClient(app)


def _oauth_user(email: str = "person@example.com") -> UserPrincipal:
    return UserPrincipal(id="u-oauth", email=email, user_metadata={"avatar_url": "https://img"})


def _link_body(**overrides: Any) -> dict[str, Any]:
    body = {
        "action": "link",
        "token": generate_linking_token("person@example.com", "google", secret=SECRET),
        "oauthUserId": "u-oauth",
        "provider": "google",
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# /api/auth/link-account
# ---------------------------------------------------------------------------


def test_linking_disabled_is_unavailable(gateway, store) -> None:
    client = _client(gateway, store, linking=_linking(), FF_ACCOUNT_LINKING_ENABLED=False)

    response = client.post("/api/auth/link-account", json={"action": "check"})

    assert response.status_code == 503
    assert response.json() == {"error": "Account linking is not available"}


def test_linking_without_admin_client_is_unavailable(gateway, store) -> None:
    response = _client(gateway, store, linking=None).post(
        "/api/auth/link-account", json={"action": "check"}
    )

    assert response.status_code == 503


def test_check_requires_email_and_provider(gateway, store) -> None:
    response = _client(gateway, store, linking=_linking()).post(
        "/api/auth/link-account", json={"action": "check", "email": "person@example.com"}
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Email and provider are required"}


def test_check_without_conflict_has_no_token(gateway, store) -> None:
    response = _client(gateway, store, linking=_linking()).post(
        "/api/auth/link-account",
        json={"action": "check", "email": "person@example.com", "provider": "google"},
    )

    assert response.status_code == 200
    assert response.json() == {"result": {"needsLinking": False}}


def test_check_conflict_returns_token_usable_for_link(gateway, store) -> None:
    linking = _linking(check=_email_exists())
    client = _client(gateway, store, linking=linking, user=_oauth_user())

    check = client.post(
        "/api/auth/link-account",
        json={"action": "check", "email": "person@example.com", "provider": "google"},
    )
    result = check.json()["result"]
    assert result["needsLinking"] is True
    assert result["conflictType"] == "email_exists"

    response = client.post("/api/auth/link-account", json=_link_body(token=result["token"]))

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "linkedUserId": "u-email",
        "message": "Accounts linked successfully",
    }
    linking.link_oauth_to_existing_account.assert_awaited_once_with(
        "u-email",
        "u-oauth",
        "google",
        oauth_user_metadata={"avatar_url": "https://img"},
    )


def test_link_requires_all_fields(gateway, store) -> None:
    response = _client(gateway, store, linking=_linking(), user=_oauth_user()).post(
        "/api/auth/link-account", json={"action": "link", "provider": "google"}
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Token, OAuth user ID, and provider are required"}


def test_link_rejects_bad_token(gateway, store) -> None:
    response = _client(gateway, store, linking=_linking(), user=_oauth_user()).post(
        "/api/auth/link-account", json=_link_body(token="garbage")
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid or expired linking token"}


def test_link_requires_session(gateway, store) -> None:
    response = _client(gateway, store, linking=_linking(), user=None).post(
        "/api/auth/link-account", json=_link_body()
    )

    assert response.status_code == 401


def test_link_rejects_other_users_id(gateway, store) -> None:
    linking = _linking(check=_email_exists())
    response = _client(gateway, store, linking=linking, user=_oauth_user()).post(
        "/api/auth/link-account", json=_link_body(oauthUserId="u-someone-else")
    )

    assert response.status_code == 403
    assert response.json() == {"error": "User ID mismatch"}
    linking.link_oauth_to_existing_account.assert_not_awaited()


def test_link_rejects_token_for_other_email(gateway, store) -> None:
    linking = _linking(check=_email_exists())
    response = _client(gateway, store, linking=linking, user=_oauth_user("other@example.com")).post(
        "/api/auth/link-account", json=_link_body()
    )

    assert response.status_code == 403
    linking.link_oauth_to_existing_account.assert_not_awaited()


def test_link_when_not_needed_is_bad_request(gateway, store) -> None:
    response = _client(gateway, store, linking=_linking(), user=_oauth_user()).post(
        "/api/auth/link-account", json=_link_body()
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Account linking not required or existing user not found"}


def test_link_failure_is_internal_error(gateway, store) -> None:
    linking = _linking(
        check=_email_exists(),
        link=LinkAccountsResult(success=False, error="Failed to link accounts"),
    )
    response = _client(gateway, store, linking=linking, user=_oauth_user()).post(
        "/api/auth/link-account", json=_link_body()
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to link accounts"}


def test_unknown_action_is_bad_request(gateway, store) -> None:
    response = _client(gateway, store, linking=_linking()).post(
        "/api/auth/link-account", json={"action": "merge"}
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid action"}


def test_linking_service_crash_is_internal_error(gateway, store) -> None:
    linking = _linking()
    linking.check_account_linking.side_effect = RuntimeError("boom")

    response = _client(gateway, store, linking=linking).post(
        "/api/auth/link-account",
        json={"action": "check", "email": "person@example.com", "provider": "google"},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


# ---------------------------------------------------------------------------
# /api/auth/create-customer
# ---------------------------------------------------------------------------


def test_create_customer_requires_fields(gateway, store) -> None:
    response = _client(gateway, store).post("/api/auth/create-customer", json={"userId": "user-1"})

    assert response.status_code == 400
    assert response.json() == {"error": "Missing required fields: userId and email"}


def test_create_customer_then_repeat(gateway, store) -> None:
    client = _client(gateway, store)
    body = {"userId": "user-1", "email": "a@example.com", "fullName": "Ada"}

    first = client.post("/api/auth/create-customer", json=body)
    second = client.post("/api/auth/create-customer", json=body)

    assert first.status_code == 200
    assert first.json()["message"] == "Customer and profile created successfully"
    data = first.json()["data"]
    assert data["isNewCustomer"] is True and data["isNewProfile"] is True
    assert data["profileId"] == store.profiles["user-1"].id

    assert second.json()["message"] == "Customer and profile already exist"
    assert second.json()["data"]["stripeCustomerId"] == data["stripeCustomerId"]
    assert second.json()["data"]["isNewCustomer"] is False


def test_create_customer_with_info_logging(gateway, store, caplog) -> None:
    caplog.set_level(logging.INFO)

    response = _client(gateway, store).post(
        "/api/auth/create-customer", json={"userId": "user-1", "email": "a@example.com"}
    )

    assert response.status_code == 200
    assert response.json()["data"]["isNewProfile"] is True
    upserted = [r for r in caplog.records if r.getMessage() == "profile_upserted"]
    assert upserted and upserted[0].profile_created is True


def test_create_customer_stripe_failure(gateway, store) -> None:
    gateway.fail_on.add("create_customer")

    response = _client(gateway, store).post(
        "/api/auth/create-customer", json={"userId": "user-1", "email": "a@example.com"}
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to create customer and profile"}
