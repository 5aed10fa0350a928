from __future__ import annotations

from typing import Optional

from fastapi.testclient import TestClient

from backend.app.auth import UserPrincipal, get_current_user_optional
from backend.app.main import create_app
from backend.app.tests.fakes import make_container, paid_checkout


def _client(container, user: Optional[UserPrincipal]) -> TestClient:
    app = create_app(container)
    app.dependency_overrides[get_current_user_optional] = lambda: user
    return TestClient(app)


def _user(email: str = "x@example.com") -> UserPrincipal:
    return UserPrincipal(id="user-1", email=email)


def test_requires_authentication(container) -> None:
    response = _client(container, None).post(
        "/api/reconcile-account", json={"sessionId": "cs_1", "userEmail": "x@example.com"}
    )

    assert response.status_code == 401
    assert response.json() == {"error": "Authentication required"}


def test_requires_session_and_email(container) -> None:
    response = _client(container, _user()).post("/api/reconcile-account", json={"sessionId": "cs_1"})

    assert response.status_code == 400
    assert response.json() == {"error": "Missing required fields: sessionId and userEmail"}


def test_email_must_match_authenticated_user(container) -> None:
    response = _client(container, _user("x@example.com")).post(
        "/api/reconcile-account", json={"sessionId": "cs_1", "userEmail": "X@example.com"}
    )

    assert response.status_code == 403
    assert response.json() == {"error": "Email mismatch with authenticated user"}


def test_malformed_body_is_internal_error(container) -> None:
    response = _client(container, _user()).post(
        "/api/reconcile-account",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error during reconciliation"}


def test_failed_reconciliation_is_bad_request(container, gateway) -> None:
    paid_checkout(gateway, session_id="cs_1", email="x@example.com")
    gateway.checkout_sessions["cs_1"]["payment_status"] = "unpaid"

    response = _client(container, _user()).post(
        "/api/reconcile-account", json={"sessionId": "cs_1", "userEmail": "x@example.com"}
    )

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Failed to extract payment information",
        "error": "Payment was not successful",
    }


def test_customer_of_another_user_needs_support(container, gateway, store) -> None:
    paid_checkout(
        gateway,
        session_id="cs_1",
        email="x@example.com",
        customer_metadata={"user_id": "user-other"},
    )

    response = _client(container, _user()).post(
        "/api/reconcile-account", json={"sessionId": "cs_1", "userEmail": "x@example.com"}
    )

    assert response.status_code == 409
    body = response.json()
    assert body["requiresSupport"] is True
    assert body["success"] is False
    assert body["error"] == "Duplicate email detected"
    assert [log.status for log in store.logs] == ["requires_review"]


def test_guest_checkout_then_signup_links_payment(gateway, store) -> None:
    paid_checkout(gateway, session_id="cs_1", email="x@example.com", subscription_id=None)
    container = make_container(gateway, store)
    client = _client(container, _user())

    gateway.event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_1",
                "mode": "subscription",
                "customer": "cus_guest",
                "subscription": None,
                "payment_status": "paid",
            }
        },
    }
    webhook = client.post(
        "/api/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"}
    )
    assert webhook.status_code == 200
    assert store.guest_sessions["cs_1"].consumed is False
    assert gateway.customers["cus_guest"]["metadata"]["is_guest_checkout"] == "true"
    assert gateway.calls_to("list_subscriptions") == []

    store.add_profile("user-1", "x@example.com")
    response = client.post(
        "/api/reconcile-account", json={"sessionId": "cs_1", "userEmail": "x@example.com"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["operation"] == "linked_existing"
    assert body["subscriptionLinked"] is False
    assert store.profiles["user-1"].stripe_customer_id == "cus_guest"
    assert gateway.calls_to("list_subscriptions") == []
    assert store.guest_sessions["cs_1"].consumed is True
    assert store.guest_sessions["cs_1"].consumed_by_user_id == "user-1"
