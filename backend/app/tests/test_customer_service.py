from __future__ import annotations

import asyncio

from backend.app.billing.customer_service import CustomerService


def _service(store, gateway) -> CustomerService:
    return CustomerService(store, gateway)


def test_lookup_without_profile_fails(store, gateway) -> None:
    result = asyncio.run(_service(store, gateway).get_customer_by_user_id("user-1"))

    assert not result.success
    assert result.error == "Profile not found"


def test_lookup_returns_profile_customer(store, gateway) -> None:
    store.add_profile("user-1", "a@example.com", "cus_1")

    result = asyncio.run(_service(store, gateway).get_customer_by_user_id("user-1"))

    assert result.success
    assert result.stripe_customer_id == "cus_1"


def test_ensure_creates_customer_and_profile(store, gateway) -> None:
    result = asyncio.run(
        _service(store, gateway).ensure_customer_exists("user-1", "a@example.com", "Ada Lovelace")
    )

    assert result.success
    assert result.is_new_customer and result.is_new_profile
    customer = gateway.customers[result.stripe_customer_id]
    assert customer["metadata"] == {"source": "saaskit_signup", "user_id": "user-1"}
    assert customer["name"] == "Ada Lovelace"
    assert store.profiles["user-1"].stripe_customer_id == result.stripe_customer_id
    assert store.tracked == [("user-1", result.stripe_customer_id, "a@example.com")]


def test_ensure_is_idempotent(store, gateway) -> None:
    service = _service(store, gateway)
    first = asyncio.run(service.ensure_customer_exists("user-1", "a@example.com"))

    second = asyncio.run(service.ensure_customer_exists("user-1", "a@example.com"))

    assert second.success
    assert second.stripe_customer_id == first.stripe_customer_id
    assert not second.is_new_customer and not second.is_new_profile
    assert len(gateway.calls_to("create_customer")) == 1


def test_ensure_reuses_tracked_customer(store, gateway) -> None:
    store.tracked.append(("user-1", "cus_tracked", "a@example.com"))

    result = asyncio.run(_service(store, gateway).ensure_customer_exists("user-1", "a@example.com"))

    assert result.success
    assert result.stripe_customer_id == "cus_tracked"
    assert result.is_new_profile and not result.is_new_customer
    assert gateway.calls_to("create_customer") == []


def test_ensure_reports_stripe_failure(store, gateway) -> None:
    gateway.fail_on.add("create_customer")

    result = asyncio.run(_service(store, gateway).ensure_customer_exists("user-1", "a@example.com"))

    assert not result.success
    assert "create_customer" in result.error
    assert store.profiles == {}


def test_ensure_tolerates_tracking_failure(store, gateway) -> None:
    store.fail_on.add("record_stripe_customer")

    result = asyncio.run(_service(store, gateway).ensure_customer_exists("user-1", "a@example.com"))

    assert result.success
    assert store.profiles["user-1"].stripe_customer_id == result.stripe_customer_id


def test_update_customer_id_requires_profile(store, gateway) -> None:
    service = _service(store, gateway)

    missing = asyncio.run(service.update_customer_stripe_id("user-1", "cus_2"))
    store.add_profile("user-1", "a@example.com", "cus_1")
    updated = asyncio.run(service.update_customer_stripe_id("user-1", "cus_2"))

    assert not missing.success and missing.error == "Profile not found"
    assert updated.success
    assert store.profiles["user-1"].stripe_customer_id == "cus_2"
