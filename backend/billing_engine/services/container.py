"""Construction of the service graph.

The store handle is built once per process and passed explicitly to the
facade, the scheduler and the reconciler.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from billing_engine.core.database import SessionLocal
from billing_engine.models.shared import utc_now
from billing_engine.services.billing_facade import BillingFacade
from billing_engine.services.billing_reconciler import BillingEventReconciler
from billing_engine.services.client_directory import ClientDirectory, get_client_directory
from billing_engine.services.event_verifier import EventVerifier, get_event_verifier
from billing_engine.services.invoice_store import InvoiceStore
from billing_engine.services.notification_service import (
    NotificationSink,
    get_notification_sink,
)
from billing_engine.services.recurring_scheduler import RecurringScheduler


@dataclass
class BillingServices:
    store: InvoiceStore
    facade: BillingFacade
    scheduler: RecurringScheduler
    reconciler: BillingEventReconciler


def build_services(
    session_factory: Callable[[], Session] | None = None,
    client_directory: ClientDirectory | None = None,
    notifications: NotificationSink | None = None,
    verifier: EventVerifier | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> BillingServices:
    factory = session_factory or SessionLocal
    store = InvoiceStore(factory, client_directory or get_client_directory(), clock=clock)
    return BillingServices(
        store=store,
        facade=BillingFacade(store, notifications or get_notification_sink()),
        scheduler=RecurringScheduler(store, clock=clock),
        reconciler=BillingEventReconciler(factory, verifier or get_event_verifier(), clock=clock),
    )
