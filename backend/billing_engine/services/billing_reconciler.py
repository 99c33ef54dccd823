"""Billing Event Reconciler.

Converges the local Subscription and BillingHistory records with the payment
provider from webhook events that may arrive duplicated, late or out of order.

Anti-regression: every subscription event carries a version key
``(sequence or created, event id)``. An event is applied only if its key is
strictly greater than the key stored on the row, so the final state is that of
the newest event whatever the arrival order. ``canceled`` is terminal for a row.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from billing_engine.core.database import session_scope
from billing_engine.core.errors import UnauthenticatedEventError, ValidationError
from billing_engine.core.retry import retry_storage
from billing_engine.models.billing_history import BillingHistoryStatus
from billing_engine.models.provider_event import EventOutcome
from billing_engine.models.shared import utc_now
from billing_engine.models.subscription import Subscription, SubscriptionStatus
from billing_engine.repositories.billing_history_repository import BillingHistoryRepository
from billing_engine.repositories.provider_event_repository import ProviderEventRepository
from billing_engine.repositories.subscription_repository import SubscriptionRepository
from billing_engine.schemas.billing import ProviderEventPayload, ReconcileResult
from billing_engine.services.event_verifier import EventVerifier

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# Currencies the provider reports without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF",
     "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


def normalize_event_type(event_type: str) -> str:
    """Map ``customer.subscription.*`` to ``subscription.*``."""
    if event_type.startswith("customer.subscription."):
        return event_type[len("customer.") :]
    return event_type


def _from_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"Invalid timestamp {value!r}") from None


def _minor_to_major(amount: Any, currency: str) -> Decimal:
    try:
        minor = Decimal(int(amount or 0))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid amount {amount!r}") from None
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return minor
    return minor / Decimal(100)


def _plan_id(obj: dict[str, Any]) -> str | None:
    plan = obj.get("plan")
    if isinstance(plan, dict) and plan.get("id"):
        return str(plan["id"])
    items = obj.get("items", {})
    data = items.get("data", []) if isinstance(items, dict) else []
    if data and isinstance(data[0], dict):
        price = data[0].get("price") or data[0].get("plan") or {}
        if isinstance(price, dict) and price.get("id"):
            return str(price["id"])
    return None


def _period_end(obj: dict[str, Any]) -> datetime | None:
    if obj.get("current_period_end") is not None:
        return _from_timestamp(obj["current_period_end"])
    # Newer API versions report the period on the subscription item
    items = obj.get("items", {})
    data = items.get("data", []) if isinstance(items, dict) else []
    if data and isinstance(data[0], dict) and data[0].get("current_period_end") is not None:
        return _from_timestamp(data[0]["current_period_end"])
    return None


class BillingEventReconciler:
    """Applies verified provider events to Subscription and BillingHistory rows.

    Args:
        session_factory: Creates a session per event transaction.
        verifier: Authenticates raw webhook bodies.
        clock: Returns the current aware UTC datetime.
        sleep: Sleep function for storage retries, injectable for tests.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        verifier: EventVerifier,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] | None = None,
    ):
        self.session_factory = session_factory
        self.verifier = verifier
        self.clock = clock
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}
        self._handlers: dict[
            str, Callable[[Session, ProviderEventPayload], tuple[EventOutcome, str | None]]
        ] = {
            SUBSCRIPTION_CREATED: self._handle_subscription_upsert,
            SUBSCRIPTION_UPDATED: self._handle_subscription_upsert,
            SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            INVOICE_PAID: self._handle_invoice_paid,
            INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
        }

    def handle(self, payload: bytes, signature: str | None) -> ReconcileResult:
        """Verify a raw webhook body and apply the event.

        Raises:
            UnauthenticatedEventError: If verification fails. Nothing is written.
            ValidationError: If the verified event is malformed.
        """
        try:
            event = self.verifier.verify(payload, signature)
        except UnauthenticatedEventError:
            logger.warning("Rejected provider event with invalid signature")
            raise
        return self.apply(event)

    def apply(self, event: ProviderEventPayload) -> ReconcileResult:
        """Apply a verified event, retrying transient storage failures."""
        return retry_storage(lambda: self._apply_once(event), **self._retry_kwargs)

    def _apply_once(self, event: ProviderEventPayload) -> ReconcileResult:
        event_type = normalize_event_type(event.type)
        with session_scope(self.session_factory) as db:
            events = ProviderEventRepository(db)
            if events.get_by_event_id(event.id) is not None:
                logger.info("Provider event %s already processed", event.id)
                return ReconcileResult(
                    event_id=event.id,
                    event_type=event.type,
                    outcome=EventOutcome.DUPLICATE.value,
                )

            handler = self._handlers.get(event_type)
            if handler is None:
                outcome, detail = EventOutcome.IGNORED, "unsupported event type"
            else:
                outcome, detail = handler(db, event)

            events.record(event_id=event.id, event_type=event.type, outcome=outcome.value)

        if outcome == EventOutcome.STALE:
            logger.warning("Discarded stale provider event %s (%s): %s", event.id, event.type, detail)
        else:
            logger.info("Provider event %s (%s): %s", event.id, event.type, outcome.value)
        return ReconcileResult(
            event_id=event.id, event_type=event.type, outcome=outcome.value, detail=detail
        )

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    @staticmethod
    def _subscription_ref(event: ProviderEventPayload) -> tuple[str, str]:
        obj = event.data_object
        subscription_id = obj.get("id")
        if not subscription_id:
            raise ValidationError("Subscription event without a subscription id", event_id=event.id)
        return str(subscription_id), str(obj.get("customer") or "")

    @staticmethod
    def _is_newer(subscription: Subscription, event: ProviderEventPayload) -> bool:
        stored = (int(subscription.last_event_version or 0), subscription.last_event_id or "")
        return (event.version, event.id) > stored

    def _write_subscription(
        self,
        subscription: Subscription,
        event: ProviderEventPayload,
        status: str,
    ) -> None:
        obj = event.data_object
        if obj.get("customer"):
            subscription.customer_ref = str(obj["customer"])
        plan_id = _plan_id(obj)
        if plan_id is not None:
            subscription.plan_id = plan_id
        subscription.status = status
        period_end = _period_end(obj)
        if period_end is not None:
            subscription.current_period_end = period_end
        subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end", False))
        if status == SubscriptionStatus.CANCELED.value:
            subscription.canceled_at = (
                _from_timestamp(obj.get("canceled_at"))
                or _from_timestamp(event.created or None)
                or self.clock()
            )
        subscription.last_event_version = event.version
        subscription.last_event_id = event.id
        subscription.updated_at = self.clock()

    def _handle_subscription_upsert(
        self, db: Session, event: ProviderEventPayload
    ) -> tuple[EventOutcome, str | None]:
        subscription_id, customer_ref = self._subscription_ref(event)
        subscription = SubscriptionRepository(db).get_or_create_for_update(
            subscription_id, customer_ref
        )

        if subscription.status == SubscriptionStatus.CANCELED.value and subscription.last_event_id:
            return EventOutcome.STALE, "subscription is canceled"
        if not self._is_newer(subscription, event):
            return EventOutcome.STALE, (
                f"event version {event.version} is not newer than "
                f"{subscription.last_event_version}"
            )

        status = str(event.data_object.get("status") or SubscriptionStatus.INCOMPLETE.value)
        self._write_subscription(subscription, event, status)
        return EventOutcome.APPLIED, None

    def _handle_subscription_deleted(
        self, db: Session, event: ProviderEventPayload
    ) -> tuple[EventOutcome, str | None]:
        subscription_id, customer_ref = self._subscription_ref(event)
        subscription = SubscriptionRepository(db).get_or_create_for_update(
            subscription_id, customer_ref
        )

        if self._is_newer(subscription, event):
            self._write_subscription(subscription, event, SubscriptionStatus.CANCELED.value)
            return EventOutcome.APPLIED, None
        if subscription.status != SubscriptionStatus.CANCELED.value:
            # Deletion is terminal even when a later-versioned update was seen first
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = _from_timestamp(
                event.data_object.get("canceled_at")
            ) or self.clock()
            subscription.updated_at = self.clock()
            return EventOutcome.APPLIED, "canceled over a newer update"
        return EventOutcome.STALE, "subscription already canceled"

    # ------------------------------------------------------------------ #
    # Billing history
    # ------------------------------------------------------------------ #

    def _record_invoice(
        self, db: Session, event: ProviderEventPayload, status: BillingHistoryStatus
    ) -> tuple[EventOutcome, str | None]:
        obj = event.data_object
        provider_invoice_id = obj.get("id")
        if not provider_invoice_id:
            raise ValidationError("Invoice event without an invoice id", event_id=event.id)

        currency = str(obj.get("currency") or "usd").upper()
        amount_key = "amount_paid" if status == BillingHistoryStatus.SUCCEEDED else "amount_due"
        amount = _minor_to_major(obj.get(amount_key, obj.get("total")), currency)
        transitions = obj.get("status_transitions") or {}
        occurred_at = (
            _from_timestamp(transitions.get("paid_at"))
            if status == BillingHistoryStatus.SUCCEEDED and isinstance(transitions, dict)
            else None
        ) or _from_timestamp(event.created or None) or self.clock()
        description = obj.get("description") or (
            f"Invoice {obj['number']}" if obj.get("number") else None
        )

        repo = BillingHistoryRepository(db)
        inserted = repo.insert_if_absent(
            provider_invoice_id=str(provider_invoice_id),
            customer_ref=str(obj.get("customer") or ""),
            subscription_id=str(obj["subscription"]) if obj.get("subscription") else None,
            amount=amount,
            currency=currency,
            status=status.value,
            description=description,
            occurred_at=occurred_at,
        )
        if inserted:
            return EventOutcome.APPLIED, None

        existing = repo.get_by_provider_invoice_id(str(provider_invoice_id), for_update=True)
        if (
            existing is not None
            and existing.status == BillingHistoryStatus.FAILED.value
            and status == BillingHistoryStatus.SUCCEEDED
        ):
            # A later successful payment supersedes a recorded failure
            existing.status = status.value
            existing.amount = amount
            existing.occurred_at = occurred_at
            if description:
                existing.description = description
            return EventOutcome.APPLIED, "superseded failed payment"
        return EventOutcome.STALE, "billing history entry already recorded"

    def _handle_invoice_paid(
        self, db: Session, event: ProviderEventPayload
    ) -> tuple[EventOutcome, str | None]:
        return self._record_invoice(db, event, BillingHistoryStatus.SUCCEEDED)

    def _handle_invoice_payment_failed(
        self, db: Session, event: ProviderEventPayload
    ) -> tuple[EventOutcome, str | None]:
        return self._record_invoice(db, event, BillingHistoryStatus.FAILED)
