from __future__ import annotations

from fastapi.testclient import TestClient

from backend.app.main import app
from backend.app.telemetry.metrics import (
    observe_reconciliation,
    observe_webhook_event,
    record_guest_cleanup,
)
from backend.app.tests.fakes import make_settings
from backend.app.utils.circuit_breaker import get_circuit_breaker


client = TestClient(app)


def test_metrics_endpoint_exposes_core_metrics() -> None:
    response = client.get("/metrics")
    assert response.status_code == 200
    content_type = response.headers.get("content-type", "")
    assert content_type.startswith("text/plain")

    body = response.text
    assert body

    # Core API metrics
    assert "http_server_request_duration_seconds" in body
    assert "http_server_requests_total" in body

    # Webhook and reconciliation metrics
    assert "saaskit_webhook_events_total" in body
    assert "saaskit_reconciliation_outcomes_total" in body

    # Guest session cleanup metrics
    assert "saaskit_guest_sessions_cleaned_total" in body
    assert "guest_cleanup_last_success_timestamp" in body

    # Circuit breaker metrics
    assert "circuit_state" in body


def test_recorded_events_show_up_with_labels() -> None:
    observe_webhook_event("checkout.session.completed", "guest_recorded")
    observe_reconciliation("link_guest_customer", "success")
    record_guest_cleanup(3, timestamp=1_700_000_000.0)

    body = client.get("/metrics").text

    assert 'event_type="checkout.session.completed"' in body
    assert 'outcome="guest_recorded"' in body
    assert 'operation="link_guest_customer"' in body
    assert "guest_cleanup_last_success_timestamp{" in body


def test_registered_breaker_is_reported_before_any_transition() -> None:
    get_circuit_breaker("stripe", make_settings(), target="stripe")

    body = client.get("/metrics").text

    assert 'breaker_name="stripe"' in body
    assert 'target="stripe"' in body
