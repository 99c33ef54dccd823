"""Tests for the client directory and notification sink collaborators."""

import json
from datetime import date
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import httpx
import pytest

from billing_engine.core.errors import StorageError
from billing_engine.models.invoice import InvoiceStatus
from billing_engine.schemas.invoice import InvoiceResponse
from billing_engine.services.client_directory import (
    AllowAllClientDirectory,
    HttpClientDirectory,
    InMemoryClientDirectory,
    get_client_directory,
)
from billing_engine.services.notification_service import (
    INVOICE_READY_EVENT,
    LoggingNotificationSink,
    WebhookNotificationSink,
    build_invoice_ready_payload,
    get_notification_sink,
)
from billing_engine.services.webhook_signing import generate_hmac_signature


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def sample_invoice():
    return InvoiceResponse(
        id=uuid4(),
        organization_id=uuid4(),
        invoice_number="INV-20240315-0001",
        client_id="client-acme",
        status=InvoiceStatus.SENT,
        issue_date=date(2024, 3, 1),
        due_date=date(2024, 3, 31),
        subtotal=Decimal("250"),
        tax=Decimal("10"),
        discount=Decimal("5"),
        total=Decimal("255"),
        currency="USD",
        notes=None,
        is_recurring=False,
        frequency=None,
        next_invoice_date=None,
        source_invoice_id=None,
        sent_at=None,
        paid_at=None,
        cancelled_at=None,
        version=2,
        line_items=[],
        created_at=None,
        updated_at=None,
    )


class TestClientDirectory:
    def test_in_memory(self):
        directory = InMemoryClientDirectory(["a"])
        assert directory.client_exists("a")
        directory.remove("a")
        directory.add("b")
        assert not directory.client_exists("a")
        assert directory.client_exists("b")

    def test_allow_all(self):
        directory = AllowAllClientDirectory()
        assert directory.client_exists("anything")
        assert not directory.client_exists("")

    def test_http_lookup_found_and_cached(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url.path)
            return httpx.Response(200, json={"id": "client-acme"})

        clock = FakeMonotonic()
        directory = HttpClientDirectory(
            "http://clients.local/",
            cache_seconds=60,
            transport=httpx.MockTransport(handler),
            clock=clock,
        )

        assert directory.client_exists("client-acme")
        assert directory.client_exists("client-acme")
        assert requests == ["/clients/client-acme"]

        clock.now += 61
        assert directory.client_exists("client-acme")
        assert len(requests) == 2

    def test_http_lookup_missing_not_cached(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        directory = HttpClientDirectory(
            "http://clients.local", transport=httpx.MockTransport(handler)
        )

        assert directory.client_exists("client-nobody") is False
        assert directory.client_exists("client-nobody") is False
        assert len(calls) == 2

    def test_http_server_error_is_storage_error(self):
        directory = HttpClientDirectory(
            "http://clients.local",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(StorageError):
            directory.client_exists("client-acme")

    def test_http_connection_error_is_storage_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        directory = HttpClientDirectory(
            "http://clients.local", transport=httpx.MockTransport(handler)
        )
        with pytest.raises(StorageError):
            directory.client_exists("client-acme")

    def test_factory(self):
        with patch("billing_engine.services.client_directory.settings") as mock_settings:
            mock_settings.client_directory_url = ""
            assert isinstance(get_client_directory(), AllowAllClientDirectory)
            mock_settings.client_directory_url = "http://clients.local"
            mock_settings.client_directory_cache_seconds = 30
            directory = get_client_directory()
        assert isinstance(directory, HttpClientDirectory)
        assert directory.cache_seconds == 30


class TestNotificationSink:
    def test_payload(self, sample_invoice):
        payload = build_invoice_ready_payload(sample_invoice)
        assert payload["event_type"] == INVOICE_READY_EVENT
        assert payload["invoice_id"] == str(sample_invoice.id)
        assert payload["status"] == "sent"
        assert payload["total"] == "255"
        assert payload["due_date"] == "2024-03-31"

    def test_logging_sink(self, sample_invoice):
        sink = LoggingNotificationSink()
        assert sink.invoice_ready(sample_invoice) is True
        assert sink.delivered[0]["invoice_number"] == "INV-20240315-0001"

    def test_webhook_sink_signs_payload(self, sample_invoice):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.content
            captured["headers"] = request.headers
            return httpx.Response(202)

        sink = WebhookNotificationSink(
            "http://delivery.local/hooks",
            secret="whsec_delivery",
            transport=httpx.MockTransport(handler),
        )

        assert sink.invoice_ready(sample_invoice) is True
        assert captured["headers"]["X-Billing-Event"] == INVOICE_READY_EVENT
        assert captured["headers"]["X-Billing-Signature"] == generate_hmac_signature(
            captured["body"], "whsec_delivery"
        )
        assert json.loads(captured["body"])["invoice_number"] == "INV-20240315-0001"

    def test_webhook_sink_non_2xx(self, sample_invoice):
        sink = WebhookNotificationSink(
            "http://delivery.local/hooks",
            secret="s",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        assert sink.invoice_ready(sample_invoice) is False

    def test_webhook_sink_transport_error(self, sample_invoice):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        sink = WebhookNotificationSink(
            "http://delivery.local/hooks", secret="s", transport=httpx.MockTransport(handler)
        )
        assert sink.invoice_ready(sample_invoice) is False

    def test_factory(self):
        with patch("billing_engine.services.notification_service.settings") as mock_settings:
            mock_settings.notification_webhook_url = ""
            assert isinstance(get_notification_sink(), LoggingNotificationSink)
            mock_settings.notification_webhook_url = "http://delivery.local/hooks"
            assert isinstance(get_notification_sink(), WebhookNotificationSink)
