from __future__ import annotations

import asyncio

import pytest

from backend.app.billing.sync import StripeSync
from backend.app.tests.fakes import paid_checkout


def _subscription(price: dict, **overrides) -> dict:
    sub = {
        "id": "sub_1",
        "status": "trialing",
        "cancel_at_period_end": True,
        "trial_end": 1_700_000_000,
        "items": {
            "data": [
                {
                    "price": price,
                    "current_period_start": 1_690_000_000,
                    "current_period_end": 1_692_592_000,
                }
            ]
        },
        "default_payment_method": {"card": {"brand": "visa", "last4": "4242"}},
    }
    sub.update(overrides)
    return sub


def test_plan_name_prefers_price_metadata(store, gateway) -> None:
    gateway.listed_subscriptions["cus_1"] = [
        _subscription({"id": "price_1", "nickname": "Nick", "metadata": {"plan_name": "Team"}})
    ]

    data = asyncio.run(StripeSync(store, gateway).fetch_subscription_data("cus_1"))

    assert data.plan_name == "Team"
    assert data.payment_method == {"brand": "visa", "last4": "4242"}
    # Period bounds come from the item when the subscription omits them.
    assert data.current_period_start == 1_690_000_000
    assert data.cancel_at_period_end is True


def test_plan_name_falls_back_to_product(store, gateway) -> None:
    gateway.products["prod_1"] = {"id": "prod_1", "name": "Starter"}
    gateway.listed_subscriptions["cus_1"] = [_subscription({"id": "price_1", "product": "prod_1"})]

    data = asyncio.run(StripeSync(store, gateway).fetch_subscription_data("cus_1"))

    assert data.plan_name == "Starter"


def test_customer_without_subscriptions_reports_none(store, gateway) -> None:
    data = asyncio.run(StripeSync(store, gateway).fetch_subscription_data("cus_1"))

    assert data.status == "none"
    assert data.subscription_id is None


def test_sync_writes_subscription_row(store, gateway) -> None:
    profile = store.add_profile("user-1", "a@example.com", "cus_1")
    gateway.listed_subscriptions["cus_1"] = [
        _subscription({"id": "price_1", "unit_amount": 900, "currency": "eur", "recurring": {"interval": "year"}})
    ]

    asyncio.run(StripeSync(store, gateway).sync_customer("cus_1"))

    row = store.subscriptions["sub_1"]
    assert row["profile_id"] == profile.id
    assert row["status"] == "trialing"
    assert row["plan_name"] == "Unknown Plan"
    assert (row["unit_amount"], row["currency"], row["interval"]) == (900, "eur", "year")
    assert row["trial_end"] is not None
    assert row["metadata"] == {"payment_method": {"brand": "visa", "last4": "4242"}}


def test_sync_resolves_owner_through_tracking_table(store, gateway) -> None:
    store.add_profile("user-1", "a@example.com", "cus_primary")
    store.tracked.append(("user-1", "cus_other", "a@example.com"))
    paid_checkout(gateway, customer_id="cus_other", subscription_id="sub_other")

    asyncio.run(StripeSync(store, gateway).sync_customer("cus_other"))

    assert store.subscriptions["sub_other"]["user_id"] == "user-1"


def test_sync_skips_unknown_customer(store, gateway) -> None:
    paid_checkout(gateway, customer_id="cus_orphan", subscription_id="sub_orphan")

    asyncio.run(StripeSync(store, gateway).sync_customer("cus_orphan"))

    assert store.subscriptions == {}


def test_sync_raises_on_stripe_failure(store, gateway) -> None:
    gateway.fail_on.add("list_subscriptions")

    with pytest.raises(RuntimeError):
        asyncio.run(StripeSync(store, gateway).sync_customer("cus_1"))
