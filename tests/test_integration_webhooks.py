"""Integration tests for the Stripe and Checkr webhook endpoints."""

import json
import time

from conftest import CHECKR_SECRET, STRIPE_SECRET
from junicore.service.events import CHECKR, STRIPE
from junicore.service.webhooks import StripeSignatureVerifier, _hmac_sha256_hex
from junicore.storage.models import EventStatus


def _stripe_body(event_id="evt_http_1", event_type="customer.subscription.updated"):
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "data": {"object": {"id": "sub_1", "customer": "cus_1", "status": "active"}},
        }
    ).encode()


def _post_stripe(client, body, secret=STRIPE_SECRET, timestamp=None):
    header = StripeSignatureVerifier.sign(body, secret, timestamp or int(time.time()))
    return client.post(
        "/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )


def test_stripe_event_acknowledged_and_dispatched(client, runtime, memory_store):
    seen = []
    runtime.dispatcher.register(STRIPE, "customer.subscription.updated", seen.append)
    body = _stripe_body()

    response = _post_stripe(client, body)
    client.portal.call(runtime.dispatcher.drain)

    assert response.status_code == 200
    assert response.json() == {"received": True, "duplicate": False}
    assert len(seen) == 1
    assert seen[0].subscription_id == "sub_1"
    assert memory_store.get_webhook_event(STRIPE, "evt_http_1").status == EventStatus.PROCESSED


def test_redelivery_is_acknowledged_as_duplicate(client, runtime):
    calls = []
    runtime.dispatcher.register(STRIPE, "customer.subscription.updated", calls.append)
    body = _stripe_body()

    _post_stripe(client, body)
    client.portal.call(runtime.dispatcher.drain)
    second = _post_stripe(client, body)
    client.portal.call(runtime.dispatcher.drain)

    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert len(calls) == 1


def test_bad_stripe_signature_rejected(client, memory_store):
    response = _post_stripe(client, _stripe_body(), secret="whsec_wrong")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_signature"
    assert memory_store.list_webhook_events() == []


def test_stale_stripe_timestamp_rejected(client):
    response = _post_stripe(client, _stripe_body(), timestamp=int(time.time()) - 3600)
    assert response.status_code == 400


def test_body_reserialization_breaks_signature(client):
    body = _stripe_body()
    header = StripeSignatureVerifier.sign(body, STRIPE_SECRET, int(time.time()))
    reencoded = json.dumps(json.loads(body), indent=2).encode()

    response = client.post(
        "/webhooks/stripe", content=reencoded, headers={"Stripe-Signature": header}
    )
    assert response.status_code == 400


def test_checkr_event_acknowledged(client, runtime, memory_store):
    body = json.dumps(
        {"id": "chk_evt_1", "type": "report.completed", "data": {"object": {"id": "rep_1"}}}
    ).encode()

    response = client.post(
        "/webhooks/checkr",
        content=body,
        headers={"X-Checkr-Signature": _hmac_sha256_hex(CHECKR_SECRET, body)},
    )
    client.portal.call(runtime.dispatcher.drain)

    assert response.status_code == 200
    assert memory_store.get_webhook_event(CHECKR, "chk_evt_1").status == EventStatus.PROCESSED


def test_checkr_missing_signature(client):
    response = client.post("/webhooks/checkr", content=b'{"id": "x", "type": "report.completed"}')
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_signature"


def test_signed_payload_without_id_rejected(client, memory_store):
    body = b'{"type": "report.completed"}'
    response = client.post(
        "/webhooks/checkr",
        content=body,
        headers={"X-Checkr-Signature": _hmac_sha256_hex(CHECKR_SECRET, body)},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"
    assert memory_store.list_webhook_events() == []


def test_signed_payload_with_nul_escape_rejected(client, memory_store):
    body = b'{"id": "chk_nul", "type": "report.completed", "data": {"note": "a\\u0000b"}}'
    response = client.post(
        "/webhooks/checkr",
        content=body,
        headers={"X-Checkr-Signature": _hmac_sha256_hex(CHECKR_SECRET, body)},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"
    assert memory_store.list_webhook_events() == []


def test_healthz_reports_components(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    checks = response.json()["checks"]
    assert checks["database"]["type"] == "memory"
    assert checks["redis"]["status"] == "not_configured"
    assert checks["dispatcher"]["status"] == "running"
