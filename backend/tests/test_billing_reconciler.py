"""Tests for the Billing Event Reconciler and provider event verification."""

import json
from datetime import UTC, datetime
from decimal import Decimal
from itertools import permutations
from unittest.mock import MagicMock, patch

import pytest

from billing_engine.core.errors import StorageError, UnauthenticatedEventError, ValidationError
from billing_engine.models.billing_history import BillingHistoryEntry
from billing_engine.models.provider_event import ProviderEvent
from billing_engine.models.subscription import Subscription
from billing_engine.repositories.provider_event_repository import ProviderEventRepository
from billing_engine.repositories.subscription_repository import SubscriptionRepository
from billing_engine.services.billing_reconciler import normalize_event_type
from billing_engine.services.event_verifier import (
    HmacEventVerifier,
    StripeEventVerifier,
    get_event_verifier,
    parse_event,
)
from billing_engine.services.webhook_signing import generate_hmac_signature
from tests.conftest import WEBHOOK_SECRET


def _body(event_id, event_type, obj, created=1_700_000_000, sequence=None) -> bytes:
    event = {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}
    if sequence is not None:
        event["sequence"] = sequence
    return json.dumps(event).encode()


def _deliver(reconciler, body: bytes):
    return reconciler.handle(body, generate_hmac_signature(body, WEBHOOK_SECRET))


def _subscription_event(event_id, created, status, sub_id="sub_1", event_type=None, **fields):
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_pro"}}]},
        "current_period_end": created + 30 * 86400,
    }
    obj.update(fields)
    return _body(event_id, event_type or "customer.subscription.updated", obj, created=created)


def _invoice_event(event_id, event_type, invoice_id="in_1", created=1_700_000_000, **fields):
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "customer": "cus_1",
        "subscription": "sub_1",
        "currency": "usd",
        "amount_paid": 2500,
        "amount_due": 2500,
        "number": "ACME-0001",
    }
    obj.update(fields)
    return _body(event_id, event_type, obj, created=created)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


class TestVerification:
    def test_bad_signature_changes_nothing(self, reconciler, db_session):
        body = _subscription_event("evt_1", 100, "active")

        with pytest.raises(UnauthenticatedEventError):
            reconciler.handle(body, "deadbeef")
        with pytest.raises(UnauthenticatedEventError):
            reconciler.handle(body, None)

        assert db_session.query(Subscription).count() == 0
        assert db_session.query(ProviderEvent).count() == 0

    def test_signature_with_prefix_accepted(self, reconciler):
        body = _subscription_event("evt_1", 100, "active")
        signature = "sha256=" + generate_hmac_signature(body, WEBHOOK_SECRET)

        assert reconciler.handle(body, signature).outcome == "applied"

    def test_tampered_body_rejected(self, reconciler):
        body = _subscription_event("evt_1", 100, "active")
        signature = generate_hmac_signature(body, WEBHOOK_SECRET)

        with pytest.raises(UnauthenticatedEventError):
            reconciler.handle(body.replace(b"active", b"paused"), signature)

    def test_empty_secret_rejects_everything(self):
        body = _subscription_event("evt_1", 100, "active")
        with pytest.raises(UnauthenticatedEventError):
            HmacEventVerifier("").verify(body, generate_hmac_signature(body, ""))

    def test_verified_garbage_is_validation_error(self, reconciler, db_session):
        with pytest.raises(ValidationError):
            _deliver(reconciler, b"not json")
        with pytest.raises(ValidationError):
            _deliver(reconciler, b"[1, 2]")
        with pytest.raises(ValidationError):
            _deliver(reconciler, json.dumps({"type": "invoice.paid"}).encode())
        assert db_session.query(ProviderEvent).count() == 0

    def test_parse_event_prefers_sequence(self):
        event = parse_event(_body("evt_1", "invoice.paid", {}, created=500, sequence=7))
        assert event.version == 7
        assert parse_event(_body("evt_2", "invoice.paid", {}, created=500)).version == 500


class TestStripeVerifier:
    def _verifier(self):
        verifier = StripeEventVerifier(api_key="sk_test", webhook_secret="whsec_stripe")
        mock_stripe = MagicMock()
        mock_stripe.error.SignatureVerificationError = type(
            "SignatureVerificationError", (Exception,), {}
        )
        verifier._stripe = mock_stripe
        return verifier, mock_stripe

    def test_valid_signature(self):
        verifier, mock_stripe = self._verifier()
        body = _invoice_event("evt_1", "invoice.paid")

        event = verifier.verify(body, "t=1,v1=abc")

        assert event.id == "evt_1"
        mock_stripe.Webhook.construct_event.assert_called_once_with(
            body, "t=1,v1=abc", "whsec_stripe"
        )

    def test_invalid_signature(self):
        verifier, mock_stripe = self._verifier()
        mock_stripe.Webhook.construct_event.side_effect = (
            mock_stripe.error.SignatureVerificationError("bad")
        )

        with pytest.raises(UnauthenticatedEventError):
            verifier.verify(b"{}", "t=1,v1=abc")

    def test_unparseable_payload(self):
        verifier, mock_stripe = self._verifier()
        mock_stripe.Webhook.construct_event.side_effect = ValueError("bad payload")

        with pytest.raises(UnauthenticatedEventError):
            verifier.verify(b"{", "t=1,v1=abc")

    def test_missing_signature(self):
        verifier, mock_stripe = self._verifier()
        with pytest.raises(UnauthenticatedEventError):
            verifier.verify(b"{}", None)
        mock_stripe.Webhook.construct_event.assert_not_called()

    def test_provider_selection(self):
        with patch("billing_engine.services.event_verifier.settings") as mock_settings:
            mock_settings.webhook_provider = "stripe"
            assert isinstance(get_event_verifier(), StripeEventVerifier)
            mock_settings.webhook_provider = "hmac"
            assert isinstance(get_event_verifier(), HmacEventVerifier)


class TestSubscriptionEvents:
    def test_created_event_creates_subscription(self, reconciler, db_session):
        body = _subscription_event(
            "evt_1", 1_700_000_000, "active", event_type="customer.subscription.created"
        )

        result = _deliver(reconciler, body)

        assert result.outcome == "applied"
        subscription = db_session.get(Subscription, "sub_1")
        assert subscription.status == "active"
        assert subscription.customer_ref == "cus_1"
        assert subscription.plan_id == "price_pro"
        assert subscription.last_event_version == 1_700_000_000
        assert _naive(subscription.current_period_end) == datetime(2023, 12, 14, 22, 13, 20)

    @pytest.mark.parametrize("order", list(permutations(range(3))))
    def test_arrival_order_does_not_matter(self, reconciler, db_session, order):
        events = [
            _subscription_event("evt_a", 100, "trialing", cancel_at_period_end=False),
            _subscription_event("evt_b", 200, "active", cancel_at_period_end=False),
            _subscription_event("evt_c", 300, "past_due", cancel_at_period_end=True),
        ]

        for index in order:
            _deliver(reconciler, events[index])

        subscription = db_session.get(Subscription, "sub_1")
        assert subscription.status == "past_due"
        assert subscription.cancel_at_period_end is True
        assert subscription.last_event_version == 300

    def test_older_event_reported_stale(self, reconciler):
        _deliver(reconciler, _subscription_event("evt_new", 200, "active"))
        result = _deliver(reconciler, _subscription_event("evt_old", 100, "trialing"))
        assert result.outcome == "stale"

    def test_equal_versions_ordered_by_event_id(self, reconciler, db_session):
        _deliver(reconciler, _subscription_event("evt_b", 100, "active"))
        result = _deliver(reconciler, _subscription_event("evt_a", 100, "unpaid"))

        assert result.outcome == "stale"
        assert db_session.get(Subscription, "sub_1").status == "active"

    def test_sequence_beats_created(self, reconciler, db_session):
        late = _body(
            "evt_1",
            "customer.subscription.updated",
            {"id": "sub_1", "customer": "cus_1", "status": "active"},
            created=900,
            sequence=2,
        )
        early = _body(
            "evt_2",
            "customer.subscription.updated",
            {"id": "sub_1", "customer": "cus_1", "status": "trialing"},
            created=950,
            sequence=1,
        )
        _deliver(reconciler, late)
        _deliver(reconciler, early)
        assert db_session.get(Subscription, "sub_1").status == "active"

    def test_prefix_optional(self):
        assert normalize_event_type("customer.subscription.deleted") == "subscription.deleted"
        assert normalize_event_type("subscription.deleted") == "subscription.deleted"
        assert normalize_event_type("invoice.paid") == "invoice.paid"

    def test_unprefixed_event_type(self, reconciler, db_session):
        body = _subscription_event("evt_1", 100, "active", event_type="subscription.updated")
        assert _deliver(reconciler, body).outcome == "applied"
        assert db_session.get(Subscription, "sub_1").status == "active"

    def test_deleted_is_terminal(self, reconciler, db_session):
        _deliver(reconciler, _subscription_event("evt_1", 100, "active"))
        deleted = _subscription_event(
            "evt_2",
            200,
            "canceled",
            event_type="customer.subscription.deleted",
            canceled_at=150,
        )
        assert _deliver(reconciler, deleted).outcome == "applied"

        late_update = _deliver(reconciler, _subscription_event("evt_3", 300, "active"))

        subscription = db_session.get(Subscription, "sub_1")
        assert late_update.outcome == "stale"
        assert subscription.status == "canceled"
        assert _naive(subscription.canceled_at) == datetime(1970, 1, 1, 0, 2, 30)

    def test_late_deletion_still_cancels(self, reconciler, db_session):
        _deliver(reconciler, _subscription_event("evt_2", 300, "active"))
        deleted = _subscription_event(
            "evt_1", 200, "canceled", event_type="customer.subscription.deleted"
        )

        result = _deliver(reconciler, deleted)

        subscription = db_session.get(Subscription, "sub_1")
        assert result.outcome == "applied"
        assert subscription.status == "canceled"
        assert subscription.last_event_version == 300

    def test_event_without_subscription_id_rejected(self, reconciler, db_session):
        body = _body("evt_1", "customer.subscription.updated", {"status": "active"})
        with pytest.raises(ValidationError):
            _deliver(reconciler, body)
        assert db_session.query(ProviderEvent).count() == 0


class TestInvoiceEvents:
    def test_paid_invoice_recorded(self, reconciler, db_session):
        body = _invoice_event(
            "evt_1", "invoice.paid", status_transitions={"paid_at": 1_700_000_100}
        )

        assert _deliver(reconciler, body).outcome == "applied"

        entry = db_session.query(BillingHistoryEntry).one()
        assert entry.provider_invoice_id == "in_1"
        assert entry.status == "succeeded"
        assert entry.amount == Decimal("25")
        assert entry.currency == "USD"
        assert entry.subscription_id == "sub_1"
        assert entry.description == "Invoice ACME-0001"
        assert _naive(entry.occurred_at) == _naive(
            datetime.fromtimestamp(1_700_000_100, tz=UTC)
        )

    def test_zero_decimal_currency(self, reconciler, db_session):
        _deliver(reconciler, _invoice_event("evt_1", "invoice.paid", currency="jpy"))
        assert db_session.query(BillingHistoryEntry).one().amount == Decimal("2500")

    def test_redelivery_with_new_event_id_recorded_once(self, reconciler, db_session):
        first = _deliver(reconciler, _invoice_event("evt_1", "invoice.paid"))
        second = _deliver(reconciler, _invoice_event("evt_2", "invoice.paid"))

        assert first.outcome == "applied"
        assert second.outcome == "stale"
        assert db_session.query(BillingHistoryEntry).count() == 1

    def test_same_event_id_reported_duplicate(self, reconciler, db_session):
        body = _invoice_event("evt_1", "invoice.paid")
        _deliver(reconciler, body)

        result = _deliver(reconciler, body)

        assert result.outcome == "duplicate"
        assert db_session.query(ProviderEvent).count() == 1
        assert db_session.query(BillingHistoryEntry).count() == 1

    def test_failure_superseded_by_success(self, reconciler, db_session):
        _deliver(
            reconciler, _invoice_event("evt_1", "invoice.payment_failed", amount_paid=0)
        )
        result = _deliver(reconciler, _invoice_event("evt_2", "invoice.paid"))

        entry = db_session.query(BillingHistoryEntry).one()
        assert result.outcome == "applied"
        assert entry.status == "succeeded"
        assert entry.amount == Decimal("25")

    def test_late_failure_does_not_override_success(self, reconciler, db_session):
        _deliver(reconciler, _invoice_event("evt_2", "invoice.paid"))
        result = _deliver(reconciler, _invoice_event("evt_1", "invoice.payment_failed"))

        assert result.outcome == "stale"
        assert db_session.query(BillingHistoryEntry).one().status == "succeeded"

    def test_unknown_event_type_ignored(self, reconciler, db_session):
        result = _deliver(reconciler, _body("evt_1", "charge.refunded", {"id": "ch_1"}))

        assert result.outcome == "ignored"
        assert db_session.query(ProviderEvent).one().outcome == "ignored"
        assert db_session.query(BillingHistoryEntry).count() == 0


class TestStorageRetries:
    def test_transient_failure_retried(self, reconciler, db_session):
        original = ProviderEventRepository.get_by_event_id
        calls = []

        def flaky(self, event_id):
            calls.append(event_id)
            if len(calls) == 1:
                raise StorageError("Storage unavailable")
            return original(self, event_id)

        with patch.object(ProviderEventRepository, "get_by_event_id", flaky):
            result = _deliver(reconciler, _invoice_event("evt_1", "invoice.paid"))

        assert result.outcome == "applied"
        assert calls == ["evt_1", "evt_1"]
        assert db_session.query(BillingHistoryEntry).count() == 1

    def test_persistent_failure_surfaces(self, reconciler, db_session):
        with (
            patch.object(
                ProviderEventRepository,
                "get_by_event_id",
                side_effect=StorageError("Storage unavailable"),
            ),
            pytest.raises(StorageError),
        ):
            _deliver(reconciler, _invoice_event("evt_1", "invoice.paid"))

        assert db_session.query(ProviderEvent).count() == 0


class TestSubscriptionRepository:
    def test_upsert_creates_placeholder(self, db_session):
        subscription = SubscriptionRepository(db_session).get_or_create_for_update("sub_1", "cus_1")
        assert subscription.last_event_version == 0

    def test_row_missing_after_upsert_is_storage_error(self, db_session):
        repo = SubscriptionRepository(db_session)
        with (
            patch.object(repo, "get_by_id", return_value=None),
            pytest.raises(StorageError, match="vanished"),
        ):
            repo.get_or_create_for_update("sub_1", "cus_1")
