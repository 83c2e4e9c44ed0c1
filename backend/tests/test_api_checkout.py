from __future__ import annotations

from backend.storefront.errors import ProviderUnavailable
from backend.storefront.states import EventOutcome, Rail

from conftest import TEST_SIGNATURE, event_body

BUYER = {
    "email": "Buyer@Example.com",
    "name": "  Jamie   Buyer ",
    "phone": "+1 503 555 0100",
    "shipping": {
        "streetAddress": "1 Market St",
        "city": "Portland",
        "state": "OR",
        "zipCode": "97201",
        "country": "us",
    },
}


def _start(client, product_ref="tee-25", buyer=None):
    return client.post("/checkout/start", json={"productRef": product_ref, "buyerContext": buyer or BUYER})


def test_start_returns_client_payload_in_camel_case(client):
    resp = _start(client)
    assert resp.status_code == 201
    data = resp.json()
    assert data["rail"] == "card_intent"
    assert data["experience"] == "card_element"
    assert data["clientPayload"]["clientSecret"].endswith("_secret")
    assert len(data["attemptId"]) == 36

    attempt = client.get(f"/checkout/attempts/{data['attemptId']}").json()
    assert attempt["status"] == "awaiting_payment"
    assert attempt["amountMinor"] == 2500
    assert attempt["currency"] == "USD"
    assert "clientPayload" not in attempt


def test_start_validates_buyer_context(client):
    resp = _start(client, buyer={**BUYER, "email": "not-an-email"})
    assert resp.status_code == 422

    resp = _start(client, buyer={**BUYER, "shipping": {**BUYER["shipping"], "country": "USA"}})
    assert resp.status_code == 422


def test_start_error_mapping(client, adapters):
    assert _start(client, "missing-product").status_code == 404
    assert _start(client, "broken-rail").status_code == 409

    adapters[Rail.CARD_INTENT].create_error = ProviderUnavailable(cause="api_connection")
    resp = _start(client)
    assert resp.status_code == 503
    assert "temporarily unavailable" in resp.json()["detail"]
    assert "api_connection" not in resp.json()["detail"]


def test_webhook_then_confirm_shows_success(client, services):
    attempt_id = _start(client).json()["attemptId"]
    provider_ref = client.portal.call(services.ledger.get, attempt_id).provider_ref

    body = event_body("evt_http_1", provider_ref, amount_minor=2500, currency="usd")
    first = client.post("/webhooks/card_intent", content=body, headers={"x-test-signature": TEST_SIGNATURE})
    replay = client.post("/webhooks/card_intent", content=body, headers={"x-test-signature": TEST_SIGNATURE})
    assert first.status_code == 200
    assert first.json() == {"received": True, "result": "applied"}
    assert replay.json()["result"] == "duplicate"

    confirm = client.post("/checkout/confirm", json={"attemptId": attempt_id})
    assert confirm.status_code == 200
    assert confirm.json()["status"] == "succeeded"
    assert confirm.json()["processing"] is False
    assert confirm.json()["message"].startswith("Payment confirmed")


def test_confirm_pending_reports_processing(client):
    attempt_id = _start(client).json()["attemptId"]
    resp = client.post("/checkout/confirm", json={"attemptId": attempt_id})
    assert resp.status_code == 200
    assert resp.json()["processing"] is True
    assert resp.json()["status"] == "awaiting_payment"


def test_confirm_by_provider_ref(client, adapters):
    _start(client, "bag-40")
    adapters[Rail.CARD_SESSION].poll_outcome = EventOutcome.SUCCEEDED
    ref = adapters[Rail.CARD_SESSION].created[0]
    resp = client.post("/checkout/confirm", json={"providerRef": ref})
    assert resp.json()["status"] == "succeeded"


def test_confirm_requires_a_reference(client):
    assert client.post("/checkout/confirm", json={}).status_code == 422
    assert client.post("/checkout/confirm", json={"providerRef": "pi_unknown"}).status_code == 404


def test_webhook_signature_failure_is_400(client):
    resp = client.post(
        "/webhooks/card_intent",
        content=event_body("evt_forged", "pi_x"),
        headers={"x-test-signature": "forged"},
    )
    assert resp.status_code == 400


def test_webhook_unknown_rails_are_404(client):
    assert client.post("/webhooks/bitcoin", content=b"{}").status_code == 404
    assert client.post("/webhooks/paypal_invoice", content=b"{}").status_code == 404


def test_webhooks_are_not_rate_limited(client):
    from backend.storefront.settings import settings

    settings.RATE_LIMIT_ENABLED = True
    settings.RATE_LIMIT_REQUESTS = 1
    try:
        statuses = [
            client.post(
                "/webhooks/card_intent",
                content=event_body(f"evt_burst_{i}", "pi_x"),
                headers={"x-test-signature": TEST_SIGNATURE},
            ).status_code
            for i in range(3)
        ]
    finally:
        settings.RATE_LIMIT_ENABLED = False
        settings.RATE_LIMIT_REQUESTS = 300
    assert statuses == [200, 200, 200]


# ============================================================================
# Operator endpoints
# ============================================================================


def test_operator_confirms_invoice(client):
    attempt_id = _start(client, "vase-invoice").json()["attemptId"]

    resp = client.post(
        f"/operator/attempts/{attempt_id}/confirm", json={"outcome": "succeeded", "note": "paid via PayPal"}
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "succeeded"
    assert data["result"] == "applied"
    assert len(data["reconciliationEvents"]) == 1
    assert data["reconciliationEvents"][0].startswith("manual:inv_")

    again = client.post(f"/operator/attempts/{attempt_id}/confirm", json={"outcome": "succeeded"})
    assert again.json()["result"] == "duplicate"


def test_operator_cannot_confirm_card_attempt(client):
    attempt_id = _start(client).json()["attemptId"]
    resp = client.post(f"/operator/attempts/{attempt_id}/confirm", json={"outcome": "succeeded"})
    assert resp.status_code == 404


def test_operator_lists_unapplied_events(client):
    client.post(
        "/webhooks/card_intent",
        content=event_body("evt_orphan", "pi_gone"),
        headers={"x-test-signature": TEST_SIGNATURE},
    )
    resp = client.get("/operator/unapplied-events", params={"reason": "orphaned"})
    assert resp.status_code == 200
    rows = resp.json()
    assert rows[0]["providerEventId"] == "evt_orphan"
    assert rows[0]["reason"] == "orphaned"


def test_operator_sweep(client):
    resp = client.post("/operator/sweep")
    assert resp.status_code == 200
    assert resp.json()["expired"] == 0
