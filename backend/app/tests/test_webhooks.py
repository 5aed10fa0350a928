from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fastapi.testclient import TestClient

from backend.app.billing.webhooks import (
    InvalidSignature,
    WebhookDispatcher,
    WebhookProcessingError,
    WebhookSecretMissing,
)
from backend.app.main import create_app
from backend.app.tests.fakes import (
    FakeStore,
    FakeStripe,
    make_container,
    make_settings,
    paid_checkout,
)


def _event(event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def _checkout_object(**overrides: Any) -> dict[str, Any]:
    obj = {
        "id": "cs_1",
        "mode": "subscription",
        "customer": "cus_guest",
        "subscription": "sub_guest",
        "payment_status": "paid",
        "amount_total": 2900,
        "currency": "usd",
        "customer_details": {"email": "details@example.com"},
        "metadata": {"planName": "Pro", "priceId": "price_pro"},
    }
    obj.update(overrides)
    return obj


def _dispatch(container, event: dict[str, Any]) -> str:
    return asyncio.run(container.webhooks.dispatch(event))


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


def test_verify_without_secret_raises(store, gateway) -> None:
    container = make_container(gateway, store, settings=make_settings(STRIPE_WEBHOOK_SECRET=None))

    with pytest.raises(WebhookSecretMissing):
        container.webhooks.verify(b"{}", "t=1,v1=abc")


def test_verify_rejects_bad_signature(container, gateway) -> None:
    gateway.event_error = ValueError("bad payload")

    with pytest.raises(InvalidSignature):
        container.webhooks.verify(b"{}", "t=1,v1=abc")


def test_unlisted_event_is_ignored_without_side_effects(container, gateway) -> None:
    outcome = _dispatch(container, _event("customer.created", {"id": "cus_1"}))

    assert outcome == "ignored"
    assert gateway.calls == []


def test_subscription_event_for_guest_is_not_synced(container, gateway) -> None:
    gateway.customers["cus_guest"] = {"id": "cus_guest", "metadata": {}}

    outcome = _dispatch(
        container,
        _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_guest"}),
    )

    assert outcome == "guest_skipped"
    assert gateway.calls_to("list_subscriptions") == []


def test_subscription_event_for_user_syncs_subscription(container, gateway, store) -> None:
    store.add_profile("user-1", "a@example.com", "cus_1")
    paid_checkout(gateway, customer_id="cus_1", subscription_id="sub_1")

    outcome = _dispatch(
        container,
        _event("customer.subscription.created", {"id": "sub_1", "customer": "cus_1"}),
    )

    assert outcome == "synced"
    row = store.subscriptions["sub_1"]
    assert row["user_id"] == "user-1"
    assert row["plan_name"] == "Pro"
    assert row["status"] == "active"


def test_subscription_deleted_removes_local_copy(container, gateway, store) -> None:
    store.add_profile("user-1", "a@example.com", "cus_1")
    store.subscriptions["sub_1"] = {
        "user_id": "user-1",
        "profile_id": "profile-user-1",
        "stripe_customer_id": "cus_1",
        "stripe_subscription_id": "sub_1",
    }

    outcome = _dispatch(
        container,
        _event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}),
    )

    assert outcome == "synced"
    assert store.subscriptions == {}


def test_invoice_event_without_customer_is_skipped(container, gateway) -> None:
    outcome = _dispatch(container, _event("invoice.payment_failed", {"id": "in_1"}))

    assert outcome == "skipped"
    assert gateway.calls == []


def test_guest_checkout_is_recorded_and_tagged(container, gateway, store) -> None:
    gateway.customers["cus_guest"] = {"id": "cus_guest", "email": "buyer@example.com", "metadata": {}}

    outcome = _dispatch(container, _event("checkout.session.completed", _checkout_object()))

    assert outcome == "guest_recorded"
    session = store.guest_sessions["cs_1"]
    assert session.customer_email == "buyer@example.com"
    assert session.subscription_id == "sub_guest"
    assert session.plan_name == "Pro"
    assert session.payment_status == "paid"
    assert gateway.customers["cus_guest"]["metadata"] == {
        "is_guest_checkout": "true",
        "checkout_session_id": "cs_1",
    }


def test_guest_checkout_uses_customer_details_email(container, gateway, store) -> None:
    gateway.customers["cus_guest"] = {"id": "cus_guest", "email": None, "metadata": {}}

    _dispatch(container, _event("checkout.session.completed", _checkout_object()))

    assert store.guest_sessions["cs_1"].customer_email == "details@example.com"


def test_checkout_for_existing_user_is_synced(container, gateway, store) -> None:
    store.add_profile("user-1", "a@example.com", "cus_1")
    paid_checkout(gateway, customer_id="cus_1", subscription_id="sub_1")

    outcome = _dispatch(
        container,
        _event("checkout.session.completed", _checkout_object(customer="cus_1")),
    )

    assert outcome == "synced"
    assert store.guest_sessions == {}
    assert "sub_1" in store.subscriptions


def test_one_time_checkout_is_skipped(container, gateway) -> None:
    outcome = _dispatch(
        container,
        _event("checkout.session.completed", _checkout_object(mode="payment")),
    )

    assert outcome == "skipped"
    assert gateway.calls == []


def test_guest_checkout_disabled_records_nothing(store, gateway) -> None:
    container = make_container(gateway, store, settings=make_settings(FF_GUEST_CHECKOUT_ENABLED=False))
    gateway.customers["cus_guest"] = {"id": "cus_guest", "email": "buyer@example.com", "metadata": {}}

    outcome = _dispatch(container, _event("checkout.session.completed", _checkout_object()))

    assert outcome == "guest_skipped"
    assert store.guest_sessions == {}
    assert gateway.calls_to("update_customer") == []


def test_guest_checkout_storage_failure_raises(container, gateway, store) -> None:
    gateway.customers["cus_guest"] = {"id": "cus_guest", "email": "buyer@example.com", "metadata": {}}
    store.fail_on.add("save_guest_session")

    with pytest.raises(WebhookProcessingError):
        _dispatch(container, _event("checkout.session.completed", _checkout_object()))

    assert gateway.calls_to("update_customer") == []


def test_cleanup_runs_only_when_sampled(store, gateway) -> None:
    sampled = make_container(gateway, store, random_fn=lambda: 0.0)
    store.fail_on.add("delete_expired_guest_sessions")

    # A failing sweep never fails the event.
    assert _dispatch(sampled, _event("customer.created", {})) == "ignored"

    calls: list[Any] = []
    dispatcher = WebhookDispatcher(
        gateway,  # type: ignore[arg-type]
        sampled.guest_sessions,
        sampled.sync,
        webhook_secret="whsec_test",
        random_fn=lambda: calls.append(1) or 0.5,
    )
    asyncio.run(dispatcher.dispatch(_event("customer.created", {})))
    assert calls == [1]


# ---------------------------------------------------------------------------
# HTTP endpoint
# ---------------------------------------------------------------------------


def _client(gateway: FakeStripe, store: FakeStore, **settings: Any) -> TestClient:
    container = make_container(gateway, store, settings=make_settings(**settings))
    return TestClient(create_app(container))


def test_endpoint_requires_signature_header(gateway, store) -> None:
    response = _client(gateway, store).post("/api/stripe/webhook", content=b"{}")

    assert response.status_code == 400
    assert response.json() == {"error": "Missing stripe-signature header"}


def test_endpoint_rejects_invalid_signature_without_syncing(gateway, store) -> None:
    gateway.event_error = ValueError("No signatures found matching the expected signature")

    response = _client(gateway, store).post(
        "/api/stripe/webhook",
        content=b"{}",
        headers={"stripe-signature": "t=1,v1=bad"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid signature"}
    assert [name for name, _ in gateway.calls] == ["construct_event"]


def test_endpoint_without_secret_is_server_error(gateway, store) -> None:
    response = _client(gateway, store, STRIPE_WEBHOOK_SECRET=None).post(
        "/api/stripe/webhook",
        content=b"{}",
        headers={"stripe-signature": "t=1,v1=abc"},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook secret not configured"}


def test_endpoint_acknowledges_ignored_event(gateway, store) -> None:
    gateway.event = _event("product.created", {"id": "prod_1"})

    response = _client(gateway, store).post(
        "/api/stripe/webhook",
        content=b"{}",
        headers={"stripe-signature": "t=1,v1=abc"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_endpoint_reports_processing_failure(gateway, store) -> None:
    store.add_profile("user-1", "a@example.com", "cus_1")
    gateway.fail_on.add("list_subscriptions")
    gateway.event = _event("invoice.payment_succeeded", {"id": "in_1", "customer": "cus_1"})

    response = _client(gateway, store).post(
        "/api/stripe/webhook",
        content=b"{}",
        headers={"stripe-signature": "t=1,v1=abc"},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook processing failed"}
