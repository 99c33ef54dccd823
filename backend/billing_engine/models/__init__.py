from billing_engine.models.billing_history import BillingHistoryEntry, BillingHistoryStatus
from billing_engine.models.invoice import (
    Invoice,
    InvoiceFrequency,
    InvoiceLineItem,
    InvoiceStatus,
)
from billing_engine.models.provider_event import EventOutcome, ProviderEvent
from billing_engine.models.scheduler_lease import SchedulerLease
from billing_engine.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "BillingHistoryEntry",
    "BillingHistoryStatus",
    "EventOutcome",
    "Invoice",
    "InvoiceFrequency",
    "InvoiceLineItem",
    "InvoiceStatus",
    "ProviderEvent",
    "SchedulerLease",
    "Subscription",
    "SubscriptionStatus",
]
