"""Notification sink for "invoice ready to deliver" events."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from billing_engine.core.config import settings
from billing_engine.schemas.invoice import InvoiceResponse
from billing_engine.services.webhook_signing import generate_hmac_signature

logger = logging.getLogger(__name__)

INVOICE_READY_EVENT = "invoice.ready_to_deliver"


def build_invoice_ready_payload(invoice: InvoiceResponse) -> dict[str, Any]:
    return {
        "event_type": INVOICE_READY_EVENT,
        "invoice_id": str(invoice.id),
        "invoice_number": invoice.invoice_number,
        "client_id": invoice.client_id,
        "status": invoice.status.value,
        "total": str(invoice.total),
        "currency": invoice.currency,
        "due_date": invoice.due_date.isoformat(),
    }


class NotificationSink(ABC):
    @abstractmethod
    def invoice_ready(self, invoice: InvoiceResponse) -> bool:
        """Announce that ``invoice`` is ready to deliver.

        Returns:
            True if the sink accepted the event.
        """
        pass  # pragma: no cover


class LoggingNotificationSink(NotificationSink):
    """Sink used when no delivery endpoint is configured."""

    def __init__(self) -> None:
        self.delivered: list[dict[str, Any]] = []

    def invoice_ready(self, invoice: InvoiceResponse) -> bool:
        payload = build_invoice_ready_payload(invoice)
        self.delivered.append(payload)
        logger.info("Invoice %s ready to deliver", invoice.invoice_number)
        return True


class WebhookNotificationSink(NotificationSink):
    """POSTs signed JSON events to the delivery collaborator.

    A failed delivery is logged and reported; the invoice has already been
    committed as sent, so delivery can be retried by the collaborator.
    """

    def __init__(
        self,
        url: str,
        secret: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url
        self.secret = secret if secret is not None else settings.notification_webhook_secret
        self.timeout = timeout
        self._transport = transport

    def invoice_ready(self, invoice: InvoiceResponse) -> bool:
        payload_bytes = json.dumps(build_invoice_ready_payload(invoice), default=str).encode(
            "utf-8"
        )
        headers = {
            "Content-Type": "application/json",
            "X-Billing-Signature": generate_hmac_signature(payload_bytes, self.secret),
            "X-Billing-Event": INVOICE_READY_EVENT,
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(self.url, content=payload_bytes, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Notification delivery failed for %s: %s", invoice.id, exc)
            return False

        if 200 <= resp.status_code < 300:
            return True
        logger.warning(
            "Notification endpoint returned HTTP %s for invoice %s",
            resp.status_code,
            invoice.id,
        )
        return False


def get_notification_sink() -> NotificationSink:
    if settings.notification_webhook_url:
        return WebhookNotificationSink(settings.notification_webhook_url)
    return LoggingNotificationSink()
