"""Command/query facade used by the HTTP layer and other collaborators."""

import logging
from collections.abc import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engine.core.database import session_scope
from billing_engine.core.errors import NotFoundError
from billing_engine.models.invoice import InvoiceStatus
from billing_engine.repositories.billing_history_repository import BillingHistoryRepository
from billing_engine.repositories.subscription_repository import SubscriptionRepository
from billing_engine.schemas.billing import BillingHistoryResponse, SubscriptionResponse
from billing_engine.schemas.invoice import (
    DuplicateInvoiceRequest,
    InvoiceCreate,
    InvoiceFilter,
    InvoiceResponse,
    InvoiceSummary,
    InvoiceUpdate,
)
from billing_engine.services.invoice_store import InvoiceStore
from billing_engine.services.notification_service import NotificationSink

logger = logging.getLogger(__name__)

_SENT_STATUSES = (InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


class BillingFacade:
    """Boundary API over the invoice store and the reconciled billing records.

    Storage errors are surfaced immediately; callers decide whether to retry.
    """

    def __init__(
        self,
        store: InvoiceStore,
        notifications: NotificationSink,
        session_factory: Callable[[], Session] | None = None,
    ):
        self.store = store
        self.notifications = notifications
        self.session_factory = session_factory or store.session_factory

    def _announce_if_sent(self, invoice: InvoiceResponse, previous: InvoiceStatus) -> None:
        # Only the call that moved the locked row out of draft announces it
        if previous != InvoiceStatus.DRAFT or invoice.status not in _SENT_STATUSES:
            return
        if not self.notifications.invoice_ready(invoice):
            logger.warning(
                "Invoice %s marked sent but delivery notification failed",
                invoice.invoice_number,
            )

    # Invoices

    def create_invoice(
        self, data: InvoiceCreate, organization_id: UUID | None = None
    ) -> InvoiceResponse:
        return self.store.create_invoice(data, organization_id)

    def update_invoice(
        self, invoice_id: UUID, data: InvoiceUpdate, organization_id: UUID | None = None
    ) -> InvoiceResponse:
        """Apply a patch; a draft moved to ``sent`` is announced like ``mark_sent``."""
        invoice, previous = self.store.revise_invoice(invoice_id, data, organization_id)
        self._announce_if_sent(invoice, previous)
        return invoice

    def get_invoice(self, invoice_id: UUID, organization_id: UUID | None = None) -> InvoiceResponse:
        return self.store.get_invoice(invoice_id, organization_id)

    def list_invoices(self, filters: InvoiceFilter) -> list[InvoiceResponse]:
        return self.store.list_invoices(filters)

    def count_invoices(self, filters: InvoiceFilter) -> int:
        return self.store.count_invoices(filters)

    def delete_invoice(self, invoice_id: UUID, organization_id: UUID | None = None) -> None:
        self.store.delete_invoice(invoice_id, organization_id)

    def mark_sent(
        self,
        invoice_id: UUID,
        organization_id: UUID | None = None,
        expected_version: int | None = None,
    ) -> InvoiceResponse:
        """Transition to ``sent`` and announce the invoice to the delivery sink.

        The notification goes out after the transition has committed; a
        repeated call on an already sent invoice does not notify again.
        """
        invoice, previous = self.store.transition_status(
            invoice_id, InvoiceStatus.SENT, organization_id, expected_version
        )
        self._announce_if_sent(invoice, previous)
        return invoice

    def mark_paid(
        self,
        invoice_id: UUID,
        organization_id: UUID | None = None,
        expected_version: int | None = None,
    ) -> InvoiceResponse:
        return self.store.change_status(
            invoice_id, InvoiceStatus.PAID, organization_id, expected_version
        )

    def cancel_invoice(
        self,
        invoice_id: UUID,
        organization_id: UUID | None = None,
        expected_version: int | None = None,
    ) -> InvoiceResponse:
        return self.store.change_status(
            invoice_id, InvoiceStatus.CANCELLED, organization_id, expected_version
        )

    def duplicate_invoice(
        self,
        invoice_id: UUID,
        data: DuplicateInvoiceRequest,
        organization_id: UUID | None = None,
    ) -> InvoiceResponse:
        return self.store.duplicate_invoice(invoice_id, data, organization_id)

    def invoice_summary(self, organization_id: UUID | None = None) -> InvoiceSummary:
        return self.store.summary(organization_id)

    # Billing

    def get_billing_status(self, subscription_id: str) -> SubscriptionResponse:
        with session_scope(self.session_factory) as db:
            subscription = SubscriptionRepository(db).get_by_id(subscription_id)
            if subscription is None:
                raise NotFoundError(
                    "Subscription not found", subscription_id=subscription_id
                )
            return SubscriptionResponse.model_validate(subscription)

    def billing_history(
        self,
        customer_ref: str | None = None,
        subscription_id: str | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[BillingHistoryResponse]:
        with session_scope(self.session_factory) as db:
            entries = BillingHistoryRepository(db).get_all(
                customer_ref=customer_ref,
                subscription_id=subscription_id,
                skip=skip,
                limit=limit,
            )
            return [BillingHistoryResponse.model_validate(entry) for entry in entries]
