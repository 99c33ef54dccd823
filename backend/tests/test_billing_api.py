"""Tests for the billing status and provider webhook endpoints."""

import json
from unittest.mock import patch

from billing_engine.core.errors import StorageError
from billing_engine.services.webhook_signing import generate_hmac_signature
from tests.conftest import WEBHOOK_SECRET


def _signed(event: dict) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(event).encode()
    return body, {
        "Content-Type": "application/json",
        "X-Billing-Signature": generate_hmac_signature(body, WEBHOOK_SECRET),
    }


def _subscription_event(event_id="evt_1", created=100, status="active"):
    return {
        "id": event_id,
        "type": "customer.subscription.updated",
        "created": created,
        "data": {"object": {"id": "sub_1", "customer": "cus_1", "status": status}},
    }


class TestWebhookAPI:
    def test_signed_event_applied(self, client):
        body, headers = _signed(_subscription_event())

        response = client.post("/v1/webhooks/billing", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {
            "event_id": "evt_1",
            "event_type": "customer.subscription.updated",
            "outcome": "applied",
            "detail": None,
        }

    def test_redelivery_acknowledged(self, client):
        body, headers = _signed(_subscription_event())
        client.post("/v1/webhooks/billing", content=body, headers=headers)

        response = client.post("/v1/webhooks/billing", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"

    def test_stale_event_acknowledged(self, client):
        newer, headers = _signed(_subscription_event("evt_2", 200, "past_due"))
        client.post("/v1/webhooks/billing", content=newer, headers=headers)
        older, headers = _signed(_subscription_event("evt_1", 100, "active"))

        response = client.post("/v1/webhooks/billing", content=older, headers=headers)

        assert response.status_code == 200
        assert response.json()["outcome"] == "stale"
        assert client.get("/v1/billing/subscriptions/sub_1").json()["status"] == "past_due"

    def test_alternate_signature_header(self, client):
        body = json.dumps(_subscription_event()).encode()
        response = client.post(
            "/v1/webhooks/billing",
            content=body,
            headers={"X-Signature": generate_hmac_signature(body, WEBHOOK_SECRET)},
        )
        assert response.status_code == 200

    def test_invalid_signature(self, client):
        body, _ = _signed(_subscription_event())
        response = client.post(
            "/v1/webhooks/billing", content=body, headers={"X-Billing-Signature": "bad"}
        )
        assert response.status_code == 400
        assert client.get("/v1/billing/subscriptions/sub_1").status_code == 404

    def test_missing_signature(self, client):
        body, _ = _signed(_subscription_event())
        response = client.post("/v1/webhooks/billing", content=body)
        assert response.status_code == 400

    def test_malformed_verified_payload(self, client):
        body = b"{not json"
        response = client.post(
            "/v1/webhooks/billing",
            content=body,
            headers={"X-Billing-Signature": generate_hmac_signature(body, WEBHOOK_SECRET)},
        )
        assert response.status_code == 400

    def test_storage_failure_asks_for_redelivery(self, client, reconciler):
        body, headers = _signed(_subscription_event())
        with patch.object(reconciler, "apply", side_effect=StorageError("Storage unavailable")):
            response = client.post("/v1/webhooks/billing", content=body, headers=headers)
        assert response.status_code == 503


class TestBillingAPI:
    def test_subscription_not_found(self, client):
        response = client.get("/v1/billing/subscriptions/sub_missing")
        assert response.status_code == 404

    def test_subscription_status(self, client):
        body, headers = _signed(_subscription_event())
        client.post("/v1/webhooks/billing", content=body, headers=headers)

        response = client.get("/v1/billing/subscriptions/sub_1")

        assert response.status_code == 200
        data = response.json()
        assert data["subscription_id"] == "sub_1"
        assert data["customer_ref"] == "cus_1"
        assert data["status"] == "active"
        assert data["last_event_version"] == 100

    def test_billing_history(self, client):
        for event_id, invoice_id, customer in (
            ("evt_1", "in_1", "cus_1"),
            ("evt_2", "in_2", "cus_2"),
        ):
            body, headers = _signed(
                {
                    "id": event_id,
                    "type": "invoice.paid",
                    "created": 1_700_000_000,
                    "data": {
                        "object": {
                            "id": invoice_id,
                            "customer": customer,
                            "currency": "eur",
                            "amount_paid": 4200,
                        }
                    },
                }
            )
            client.post("/v1/webhooks/billing", content=body, headers=headers)

        response = client.get("/v1/billing/history", params={"customer_ref": "cus_2"})

        assert response.status_code == 200
        entries = response.json()
        assert [e["provider_invoice_id"] for e in entries] == ["in_2"]
        assert entries[0]["currency"] == "EUR"
        assert entries[0]["status"] == "succeeded"
        assert len(client.get("/v1/billing/history").json()) == 2
        assert client.get("/v1/billing/history", params={"limit": 0}).status_code == 422
