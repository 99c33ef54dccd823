"""Shared test fixtures for all test modules."""

import contextlib
import uuid
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

import billing_engine.models  # noqa: F401
from billing_engine.core import database as db_module
from billing_engine.core.database import Base, build_engine, build_session_factory
from billing_engine.main import create_app
from billing_engine.schemas.invoice import InvoiceCreate, InvoiceLineItemInput
from billing_engine.services.billing_facade import BillingFacade
from billing_engine.services.billing_reconciler import BillingEventReconciler
from billing_engine.services.client_directory import InMemoryClientDirectory
from billing_engine.services.container import BillingServices
from billing_engine.services.event_verifier import HmacEventVerifier
from billing_engine.services.invoice_store import InvoiceStore
from billing_engine.services.notification_service import LoggingNotificationSink
from billing_engine.services.recurring_scheduler import RecurringScheduler

# In-memory SQLite engine with StaticPool so all sessions share the same
# database state; foreign keys are switched on by build_engine.
_test_engine = build_engine("sqlite://", poolclass=StaticPool)
_TestSessionLocal = build_session_factory(_test_engine)

# Well-known default organization ID used across all tests
DEFAULT_ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")

WEBHOOK_SECRET = "whsec_test_secret"
KNOWN_CLIENTS = ("client-acme", "client-globex")


class FixedClock:
    """Mutable clock handed to services instead of reading the wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set_date(self, day: date) -> None:
        self.now = datetime(day.year, day.month, day.day, 9, 0, tzinfo=UTC)

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def session_factory():
    return _TestSessionLocal


@pytest.fixture
def db_session():
    """Create a database session for direct repository testing."""
    db = _TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 15, 9, 0, tzinfo=UTC))


@pytest.fixture
def client_directory():
    return InMemoryClientDirectory(KNOWN_CLIENTS)


@pytest.fixture
def store(client_directory, clock):
    return InvoiceStore(_TestSessionLocal, client_directory, clock=clock)


@pytest.fixture
def notifications():
    return LoggingNotificationSink()


@pytest.fixture
def facade(store, notifications):
    return BillingFacade(store, notifications)


@pytest.fixture
def scheduler(store, clock):
    return RecurringScheduler(store, clock=clock, holder="test-worker", sleep=lambda _: None)


@pytest.fixture
def reconciler(clock):
    return BillingEventReconciler(
        _TestSessionLocal,
        HmacEventVerifier(WEBHOOK_SECRET),
        clock=clock,
        sleep=lambda _: None,
    )


@pytest.fixture
def services(store, facade, scheduler, reconciler):
    return BillingServices(store=store, facade=facade, scheduler=scheduler, reconciler=reconciler)


@pytest.fixture
def client(services):
    """Create test client around the test service graph."""
    return TestClient(create_app(services))


def make_invoice_create(**overrides) -> InvoiceCreate:
    """Build a valid two-line invoice payload; keyword arguments override fields."""
    data = {
        "client_id": "client-acme",
        "issue_date": date(2024, 3, 1),
        "due_date": date(2024, 3, 31),
        "tax": Decimal("10.00"),
        "discount": Decimal("5.00"),
        "line_items": [
            InvoiceLineItemInput(
                description="Consulting", quantity=Decimal("2"), unit_price=Decimal("100.00")
            ),
            InvoiceLineItemInput(
                description="Hosting", quantity=Decimal("1"), unit_price=Decimal("50.00")
            ),
        ],
    }
    data.update(overrides)
    return InvoiceCreate(**data)
