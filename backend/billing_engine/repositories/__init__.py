from billing_engine.repositories.billing_history_repository import BillingHistoryRepository
from billing_engine.repositories.invoice_repository import InvoiceRepository
from billing_engine.repositories.provider_event_repository import ProviderEventRepository
from billing_engine.repositories.scheduler_lease_repository import SchedulerLeaseRepository
from billing_engine.repositories.subscription_repository import SubscriptionRepository

__all__ = [
    "BillingHistoryRepository",
    "InvoiceRepository",
    "ProviderEventRepository",
    "SchedulerLeaseRepository",
    "SubscriptionRepository",
]
