"""Invoice Store: transactional persistence of invoices and their line items.

Every public method runs in its own transaction. Header and line items are
written as one unit, totals are recomputed server side, and status changes go
through the state machine. Results are returned as detached
``InvoiceResponse`` snapshots so no caller holds live ORM state.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from billing_engine.core.config import settings
from billing_engine.core.database import session_scope
from billing_engine.core.errors import (
    ConcurrentModificationError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from billing_engine.models.invoice import Invoice, InvoiceLineItem, InvoiceStatus
from billing_engine.models.shared import DEFAULT_ORGANIZATION_ID, utc_now
from billing_engine.repositories.invoice_repository import InvoiceRepository
from billing_engine.schemas.invoice import (
    DuplicateInvoiceRequest,
    InvoiceCreate,
    InvoiceFilter,
    InvoiceLineItemInput,
    InvoiceResponse,
    InvoiceStatusSummary,
    InvoiceSummary,
    InvoiceUpdate,
)
from billing_engine.services import invoice_dates
from billing_engine.services.client_directory import ClientDirectory
from billing_engine.services.invoice_state_machine import (
    apply_transition,
    derive_status,
    ensure_can_generate,
    is_terminal,
    validate_initial_status,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.0001")
ZERO = Decimal("0")

# Attempts at allocating a generated invoice number before giving up
NUMBER_ALLOCATION_ATTEMPTS = 3

_AMOUNT_FIELDS = ("tax", "discount")


def _money(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_line_items(items: list[InvoiceLineItemInput]) -> list[dict[str, Any]]:
    """Recompute line item amounts; a supplied amount must agree.

    Raises:
        ValidationError: If the list is empty, a quantity is finer than the stored
            precision, or a supplied amount is wrong.
    """
    if not items:
        raise ValidationError("An invoice needs at least one line item")

    rows: list[dict[str, Any]] = []
    for position, item in enumerate(items):
        quantity = _money(item.quantity)
        if quantity <= ZERO or quantity != Decimal(item.quantity):
            raise ValidationError(
                f"Line item {position} quantity {item.quantity} must be positive "
                "with at most 4 decimal places",
                position=position,
            )
        unit_price = _money(item.unit_price)
        amount = _money(quantity * unit_price)
        if item.amount is not None and _money(item.amount) != amount:
            raise ValidationError(
                f"Line item {position} amount {item.amount} does not equal "
                f"quantity * unit_price ({amount})",
                position=position,
            )
        rows.append(
            {
                "position": position,
                "description": item.description,
                "quantity": quantity,
                "unit_price": unit_price,
                "amount": amount,
            }
        )
    return rows


def compute_totals(
    amounts: list[Decimal],
    tax: Decimal,
    discount: Decimal,
    claimed_subtotal: Decimal | None = None,
    claimed_total: Decimal | None = None,
) -> tuple[Decimal, Decimal]:
    """Return ``(subtotal, total)`` for the given line item amounts.

    Caller-supplied figures are only compared, never trusted.
    """
    subtotal = _money(sum(amounts, ZERO))
    total = _money(subtotal + _money(tax) - _money(discount))
    if total < ZERO:
        raise ValidationError("Discount exceeds subtotal plus tax", total=str(total))
    if claimed_subtotal is not None and _money(claimed_subtotal) != subtotal:
        raise ValidationError(
            f"Subtotal {claimed_subtotal} does not match line items ({subtotal})"
        )
    if claimed_total is not None and _money(claimed_total) != total:
        raise ValidationError(f"Total {claimed_total} does not match computed total ({total})")
    return subtotal, total


def _check_dates(issue_date: date, due_date: date) -> None:
    if due_date < issue_date:
        raise ValidationError(
            "Due date cannot be before issue date",
            issue_date=issue_date.isoformat(),
            due_date=due_date.isoformat(),
        )


def _resolve_recurrence(
    is_recurring: bool,
    frequency: str | None,
    next_invoice_date: date | None,
    issue_date: date,
) -> tuple[bool, str | None, date | None]:
    """Normalise recurrence fields so that all three are set or none is."""
    if not is_recurring:
        if frequency is not None or next_invoice_date is not None:
            raise ValidationError(
                "frequency and next_invoice_date require is_recurring to be true"
            )
        return False, None, None
    if frequency is None:
        raise ValidationError("Recurring invoices need a frequency")
    if next_invoice_date is None:
        next_invoice_date = invoice_dates.advance(issue_date, frequency)
    return True, frequency, next_invoice_date


def _snapshot(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse.model_validate(invoice)


def _touch(invoice: Invoice, now: datetime) -> None:
    """Record a write: every change, line items included, advances the version."""
    invoice.updated_at = now
    invoice.version = int(invoice.version) + 1


class InvoiceStore:
    """Durable invoice persistence shared by the facade and the scheduler.

    Args:
        session_factory: Creates a new ``Session`` per transaction.
        client_directory: Resolves client references before writes.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        client_directory: ClientDirectory,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.client_directory = client_directory
        self.clock = clock

    def transaction(self) -> AbstractContextManager[Session]:
        """Open a transaction on a fresh session."""
        return session_scope(self.session_factory)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _today(self) -> date:
        return self.clock().date()

    def _require_client(self, client_id: str) -> None:
        # Runs before any transaction opens; no row lock is held across the lookup
        if not self.client_directory.client_exists(client_id):
            raise ValidationError(f"Client '{client_id}' not found", client_id=client_id)

    def _load(
        self,
        repo: InvoiceRepository,
        invoice_id: UUID,
        organization_id: UUID | None = None,
        for_update: bool = False,
    ) -> Invoice:
        invoice = repo.get_by_id(invoice_id, organization_id, for_update=for_update)
        if invoice is None:
            raise NotFoundError("Invoice not found", invoice_id=str(invoice_id))
        return invoice

    def _persist_derived_status(self, invoice: Invoice, now: datetime) -> None:
        derived = derive_status(invoice.status, invoice.due_date, now)
        if derived.value != invoice.status:
            invoice.status = derived.value
            _touch(invoice, now)

    @staticmethod
    def _replace_line_items(invoice: Invoice, rows: list[dict[str, Any]]) -> None:
        # delete-orphan cascade removes the old rows in the same flush
        invoice.line_items = [InvoiceLineItem(**row) for row in rows]

    @staticmethod
    def _stamp_status(invoice: Invoice, status: InvoiceStatus, now: datetime) -> None:
        if status in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE) and invoice.sent_at is None:
            invoice.sent_at = now
        elif status == InvoiceStatus.PAID:
            invoice.paid_at = now
        elif status == InvoiceStatus.CANCELLED:
            invoice.cancelled_at = now

    def _insert_invoice(
        self,
        fields: dict[str, Any],
        rows: list[dict[str, Any]],
        invoice_number: str | None,
    ) -> InvoiceResponse:
        """Insert a new invoice, allocating a number when none was supplied."""
        organization_id = fields.pop("organization_id", None) or DEFAULT_ORGANIZATION_ID
        attempts = 1 if invoice_number else NUMBER_ALLOCATION_ATTEMPTS

        for attempt in range(1, attempts + 1):
            now = self.clock()
            try:
                with self.transaction() as db:
                    repo = InvoiceRepository(db)
                    number = invoice_number
                    if number is None:
                        number = repo.generate_invoice_number(organization_id, now.date())
                    elif repo.number_exists(organization_id, number):
                        raise ValidationError(
                            f"Invoice number '{number}' already exists",
                            invoice_number=number,
                        )

                    invoice = Invoice(
                        **fields,
                        organization_id=organization_id,
                        invoice_number=number,
                        created_at=now,
                        updated_at=now,
                        version=1,
                    )
                    self._replace_line_items(invoice, rows)
                    repo.add(invoice)
                    db.flush()
                    return _snapshot(invoice)
            except ConcurrentModificationError:
                if attempt >= attempts:
                    raise
                logger.info("Invoice number collision, allocating again (attempt %d)", attempt)

        raise StorageError("Could not allocate an invoice number")  # pragma: no cover

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    def create_invoice(
        self, data: InvoiceCreate, organization_id: UUID | None = None
    ) -> InvoiceResponse:
        """Create an invoice with its line items as one atomic unit.

        Raises:
            ValidationError: Empty line items, bad totals, dates or recurrence,
                unknown client, or a duplicate invoice number.
        """
        rows = compute_line_items(data.line_items)
        subtotal, total = compute_totals(
            [row["amount"] for row in rows], data.tax, data.discount, data.subtotal, data.total
        )
        _check_dates(data.issue_date, data.due_date)
        is_recurring, frequency, next_date = _resolve_recurrence(
            data.is_recurring,
            data.frequency.value if data.frequency else None,
            data.next_invoice_date,
            data.issue_date,
        )
        initial = validate_initial_status(data.status)
        self._require_client(data.client_id)

        now = self.clock()
        status = derive_status(initial, data.due_date, now)
        fields: dict[str, Any] = {
            "organization_id": organization_id,
            "client_id": data.client_id,
            "status": status.value,
            "issue_date": data.issue_date,
            "due_date": data.due_date,
            "subtotal": subtotal,
            "tax": _money(data.tax),
            "discount": _money(data.discount),
            "total": total,
            "currency": data.currency.upper(),
            "notes": data.notes,
            "is_recurring": is_recurring,
            "frequency": frequency,
            "next_invoice_date": next_date,
        }
        if initial == InvoiceStatus.SENT:
            fields["sent_at"] = now

        invoice = self._insert_invoice(fields, rows, data.invoice_number)
        logger.info("Created invoice %s (%s)", invoice.invoice_number, invoice.id)
        return invoice

    def update_invoice(
        self,
        invoice_id: UUID,
        data: InvoiceUpdate,
        organization_id: UUID | None = None,
    ) -> InvoiceResponse:
        """Apply a patch and optionally replace the full line item set.

        ``data.expected_version`` makes the update conditional on the version
        the caller last read.

        Raises:
            NotFoundError: If the invoice does not exist.
            ValidationError: On an invariant violation.
            InvalidTransitionError: On an illegal status change.
            ConcurrentModificationError: If another writer got there first.
        """
        invoice, _ = self.revise_invoice(invoice_id, data, organization_id)
        return invoice

    def revise_invoice(
        self,
        invoice_id: UUID,
        data: InvoiceUpdate,
        organization_id: UUID | None = None,
    ) -> tuple[InvoiceResponse, InvoiceStatus]:
        """Like ``update_invoice`` but also return the status the locked row had."""
        patch = data.model_dump(exclude_unset=True, exclude={"line_items", "expected_version"})
        rows = compute_line_items(data.line_items) if data.line_items is not None else None
        if "client_id" in patch and patch["client_id"] is not None:
            self._require_client(patch["client_id"])

        with self.transaction() as db:
            repo = InvoiceRepository(db)
            invoice = self._load(repo, invoice_id, organization_id, for_update=True)
            if data.expected_version is not None and invoice.version != data.expected_version:
                raise ConcurrentModificationError(
                    "Invoice version has changed",
                    expected_version=data.expected_version,
                    current_version=invoice.version,
                )

            now = self.clock()
            current = derive_status(invoice.status, invoice.due_date, now)
            self._apply_patch(repo, invoice, current, patch, rows, now)
            _touch(invoice, now)
            db.flush()
            return _snapshot(invoice), current

    def _apply_patch(
        self,
        repo: InvoiceRepository,
        invoice: Invoice,
        current: InvoiceStatus,
        patch: dict[str, Any],
        rows: list[dict[str, Any]] | None,
        now: datetime,
    ) -> None:
        if is_terminal(current) and (
            rows is not None or any(patch.get(f) is not None for f in _AMOUNT_FIELDS)
        ):
            raise ValidationError(
                f"Amounts of a {current.value} invoice cannot change",
                status=current.value,
            )

        new_number = patch.get("invoice_number")
        if new_number is not None and new_number != invoice.invoice_number:
            if current != InvoiceStatus.DRAFT:
                raise ValidationError(
                    "Invoice number cannot change once the invoice has been sent",
                    status=current.value,
                )
            if repo.number_exists(invoice.organization_id, new_number, exclude_id=invoice.id):
                raise ValidationError(
                    f"Invoice number '{new_number}' already exists",
                    invoice_number=new_number,
                )
            invoice.invoice_number = new_number

        for field in ("client_id", "notes"):
            if field in patch and (patch[field] is not None or field == "notes"):
                setattr(invoice, field, patch[field])
        if patch.get("currency"):
            invoice.currency = patch["currency"].upper()

        issue_date = patch.get("issue_date") or invoice.issue_date
        due_date = patch.get("due_date") or invoice.due_date
        _check_dates(issue_date, due_date)
        invoice.issue_date = issue_date
        invoice.due_date = due_date

        tax = patch["tax"] if patch.get("tax") is not None else invoice.tax
        discount = patch["discount"] if patch.get("discount") is not None else invoice.discount
        if rows is not None:
            self._replace_line_items(invoice, rows)
            amounts = [row["amount"] for row in rows]
        else:
            amounts = [Decimal(item.amount) for item in invoice.line_items]
        subtotal, total = compute_totals(
            amounts, tax, discount, patch.get("subtotal"), patch.get("total")
        )
        invoice.tax = _money(tax)
        invoice.discount = _money(discount)
        invoice.subtotal = subtotal
        invoice.total = total

        self._apply_recurrence_patch(invoice, patch, issue_date)

        requested = patch.get("status")
        if requested is not None:
            new_status = apply_transition(current, requested, now, due_date)
            if new_status != current:
                self._stamp_status(invoice, new_status, now)
            invoice.status = new_status.value
        else:
            invoice.status = derive_status(current, due_date, now).value

    @staticmethod
    def _apply_recurrence_patch(
        invoice: Invoice, patch: dict[str, Any], issue_date: date
    ) -> None:
        if not any(f in patch for f in ("is_recurring", "frequency", "next_invoice_date")):
            return
        is_recurring = patch.get("is_recurring")
        if is_recurring is None:
            is_recurring = bool(invoice.is_recurring)
        if is_recurring is False:
            invoice.is_recurring = False
            invoice.frequency = None
            invoice.next_invoice_date = None
            return

        frequency = patch.get("frequency") or invoice.frequency
        if frequency is not None:
            frequency = getattr(frequency, "value", frequency)
        next_date = patch.get("next_invoice_date") or invoice.next_invoice_date
        recurring, frequency, next_date = _resolve_recurrence(
            True, frequency, next_date, issue_date
        )
        invoice.is_recurring = recurring
        invoice.frequency = frequency
        invoice.next_invoice_date = next_date

    def change_status(
        self,
        invoice_id: UUID,
        requested: InvoiceStatus,
        organization_id: UUID | None = None,
        expected_version: int | None = None,
    ) -> InvoiceResponse:
        """Run one state machine transition and persist the result."""
        invoice, _ = self.transition_status(
            invoice_id, requested, organization_id, expected_version
        )
        return invoice

    def transition_status(
        self,
        invoice_id: UUID,
        requested: InvoiceStatus,
        organization_id: UUID | None = None,
        expected_version: int | None = None,
    ) -> tuple[InvoiceResponse, InvoiceStatus]:
        """Like ``change_status`` but also return the status the locked row moved from."""
        with self.transaction() as db:
            repo = InvoiceRepository(db)
            invoice = self._load(repo, invoice_id, organization_id, for_update=True)
            if expected_version is not None and invoice.version != expected_version:
                raise ConcurrentModificationError(
                    "Invoice version has changed",
                    expected_version=expected_version,
                    current_version=invoice.version,
                )
            now = self.clock()
            current = derive_status(invoice.status, invoice.due_date, now)
            new_status = apply_transition(current, requested, now, invoice.due_date)
            if new_status != current:
                self._stamp_status(invoice, new_status, now)
            invoice.status = new_status.value
            _touch(invoice, now)
            db.flush()
            logger.info(
                "Invoice %s status %s -> %s", invoice.invoice_number, current.value, new_status.value
            )
            return _snapshot(invoice), current

    def delete_invoice(self, invoice_id: UUID, organization_id: UUID | None = None) -> bool:
        """Delete an invoice and its line items. Deleting a missing id is a no-op.

        Returns:
            True if a row was deleted.
        """
        with self.transaction() as db:
            repo = InvoiceRepository(db)
            invoice = repo.get_by_id(invoice_id, organization_id, for_update=True)
            if invoice is None:
                return False
            repo.delete(invoice)
            return True

    def duplicate_invoice(
        self,
        invoice_id: UUID,
        data: DuplicateInvoiceRequest,
        organization_id: UUID | None = None,
    ) -> InvoiceResponse:
        """Copy an invoice into a new one dated ``data.issue_date`` (default today).

        The copy keeps the payment term, amounts and line items, and is never
        recurring.
        """
        source = self.get_invoice(invoice_id, organization_id)
        initial = validate_initial_status(data.status)
        self._require_client(source.client_id)

        issue_date = data.issue_date or self._today()
        term = invoice_dates.payment_term(source.issue_date, source.due_date)
        due_date = issue_date + term
        now = self.clock()
        rows = [
            {
                "position": item.position,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "amount": item.amount,
            }
            for item in source.line_items
        ]
        fields: dict[str, Any] = {
            "organization_id": source.organization_id,
            "client_id": source.client_id,
            "status": derive_status(initial, due_date, now).value,
            "issue_date": issue_date,
            "due_date": due_date,
            "subtotal": source.subtotal,
            "tax": source.tax,
            "discount": source.discount,
            "total": source.total,
            "currency": source.currency,
            "notes": source.notes,
            "is_recurring": False,
        }
        if initial == InvoiceStatus.SENT:
            fields["sent_at"] = now

        duplicate = self._insert_invoice(fields, rows, data.invoice_number)
        logger.info(
            "Duplicated invoice %s as %s", source.invoice_number, duplicate.invoice_number
        )
        return duplicate

    def generate_successor(self, invoice_id: UUID, today: date) -> InvoiceResponse | None:
        """Materialise one successor of a due recurring invoice.

        Re-checks the due condition under a row lock, creates the successor
        draft and advances the source's ``next_invoice_date`` by one period,
        all in one transaction.

        Returns:
            The successor, or None if the invoice is gone or no longer due.

        Raises:
            InvalidTransitionError: If the template may not generate.
        """
        with self.transaction() as db:
            repo = InvoiceRepository(db)
            source = repo.get_by_id(invoice_id, for_update=True)
            if (
                source is None
                or not source.is_recurring
                or not invoice_dates.is_due(source.next_invoice_date, today)
            ):
                return None

            now = self.clock()
            ensure_can_generate(derive_status(source.status, source.due_date, today))

            issue_date, due_date = invoice_dates.successor_dates(
                source.issue_date, source.due_date, today
            )
            successor = Invoice(
                organization_id=source.organization_id,
                invoice_number=repo.generate_invoice_number(source.organization_id, today),
                client_id=source.client_id,
                status=InvoiceStatus.DRAFT.value,
                issue_date=issue_date,
                due_date=due_date,
                subtotal=source.subtotal,
                tax=source.tax,
                discount=source.discount,
                total=source.total,
                currency=source.currency,
                notes=source.notes,
                is_recurring=False,
                source_invoice_id=source.id,
                created_at=now,
                updated_at=now,
                version=1,
            )
            self._replace_line_items(
                successor,
                [
                    {
                        "position": item.position,
                        "description": item.description,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                        "amount": item.amount,
                    }
                    for item in source.line_items
                ],
            )
            repo.add(successor)

            source.next_invoice_date = invoice_dates.advance(
                source.next_invoice_date, source.frequency
            )
            _touch(source, now)
            db.flush()
            logger.info(
                "Generated %s from recurring invoice %s; next run %s",
                successor.invoice_number,
                source.invoice_number,
                source.next_invoice_date,
            )
            return _snapshot(successor)

    def refresh_overdue(self, today: date | None = None, batch_size: int | None = None) -> int:
        """Persist ``overdue`` for every ``sent`` invoice past its due date.

        Returns:
            Number of invoices updated.
        """
        run_date = today or self._today()
        limit = batch_size or settings.SCHEDULER_BATCH_SIZE
        updated = 0
        while True:
            with self.transaction() as db:
                batch = InvoiceRepository(db).get_sent_past_due(run_date, limit)
                now = self.clock()
                for invoice in batch:
                    invoice.status = InvoiceStatus.OVERDUE.value
                    _touch(invoice, now)
            updated += len(batch)
            if len(batch) < limit:
                break
        if updated:
            logger.info("Marked %d invoices overdue", updated)
        return updated

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_invoice(
        self, invoice_id: UUID, organization_id: UUID | None = None
    ) -> InvoiceResponse:
        """Read an invoice, persisting a derived ``overdue`` status."""
        with self.transaction() as db:
            invoice = self._load(InvoiceRepository(db), invoice_id, organization_id)
            self._persist_derived_status(invoice, self.clock())
            db.flush()
            return _snapshot(invoice)

    def list_invoices(self, filters: InvoiceFilter) -> list[InvoiceResponse]:
        with self.transaction() as db:
            now = self.clock()
            invoices = InvoiceRepository(db).get_all(filters, now.date())
            for invoice in invoices:
                self._persist_derived_status(invoice, now)
            db.flush()
            return [_snapshot(invoice) for invoice in invoices]

    def count_invoices(self, filters: InvoiceFilter) -> int:
        with self.transaction() as db:
            return InvoiceRepository(db).count(filters, self._today())

    def due_recurring_page(
        self,
        today: date,
        limit: int | None = None,
        after: tuple[date, UUID] | None = None,
    ) -> list[tuple[date, UUID]]:
        with self.transaction() as db:
            return InvoiceRepository(db).get_due_recurring_page(
                today, limit or settings.SCHEDULER_BATCH_SIZE, after
            )

    def summary(self, organization_id: UUID | None = None) -> InvoiceSummary:
        """Counts and sums per status, revenue and outstanding amounts."""
        self.refresh_overdue()
        with self.transaction() as db:
            by_status_raw = InvoiceRepository(db).totals_by_status(organization_id)

        by_status = {
            status.value: InvoiceStatusSummary(
                count=by_status_raw.get(status.value, (0, ZERO))[0],
                total=_money(by_status_raw.get(status.value, (0, ZERO))[1]),
            )
            for status in InvoiceStatus
        }
        total_invoices = sum(entry.count for entry in by_status.values())
        grand_total = sum((entry.total for entry in by_status.values()), ZERO)
        revenue = by_status[InvoiceStatus.PAID.value].total
        outstanding = (
            by_status[InvoiceStatus.SENT.value].total + by_status[InvoiceStatus.OVERDUE.value].total
        )
        average = _money(grand_total / total_invoices) if total_invoices else _money(ZERO)
        return InvoiceSummary(
            total_invoices=total_invoices,
            total_revenue=revenue,
            outstanding_amount=_money(outstanding),
            average_invoice_amount=average,
            by_status=by_status,
        )
