from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Query, Session

from billing_engine.models.invoice import Invoice, InvoiceStatus
from billing_engine.schemas.invoice import InvoiceFilter


class InvoiceRepository:
    """Query helpers for invoices. Never commits; the store owns transactions."""

    def __init__(self, db: Session):
        self.db = db

    def generate_invoice_number(self, organization_id: UUID, today: date) -> str:
        """Generate the next invoice number for the issuing organization."""
        prefix = f"INV-{today.strftime('%Y%m%d')}-"

        # Get the highest invoice number for today
        result = (
            self.db.query(Invoice.invoice_number)
            .filter(
                Invoice.organization_id == organization_id,
                Invoice.invoice_number.like(f"{prefix}%"),
            )
            .order_by(Invoice.invoice_number.desc())
            .first()
        )

        if result:
            # Extract number from INV-YYYYMMDD-XXXX format
            try:
                new_num = int(result[0].split("-")[-1]) + 1
            except (ValueError, IndexError):
                new_num = 1
        else:
            new_num = 1

        return f"{prefix}{new_num:04d}"

    def number_exists(
        self, organization_id: UUID, invoice_number: str, exclude_id: UUID | None = None
    ) -> bool:
        query = self.db.query(Invoice.id).filter(
            Invoice.organization_id == organization_id,
            Invoice.invoice_number == invoice_number,
        )
        if exclude_id is not None:
            query = query.filter(Invoice.id != exclude_id)
        return query.first() is not None

    def get_by_id(
        self,
        invoice_id: UUID,
        organization_id: UUID | None = None,
        for_update: bool = False,
    ) -> Invoice | None:
        query = self.db.query(Invoice).filter(Invoice.id == invoice_id)
        if organization_id is not None:
            query = query.filter(Invoice.organization_id == organization_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _filtered(self, filters: InvoiceFilter, today: date) -> Query[Invoice]:
        query = self.db.query(Invoice)
        if filters.organization_id is not None:
            query = query.filter(Invoice.organization_id == filters.organization_id)
        if filters.client_id:
            query = query.filter(Invoice.client_id == filters.client_id)
        if filters.status == InvoiceStatus.OVERDUE:
            # Stored overdue rows plus sent rows that are overdue by now
            query = query.filter(
                (Invoice.status == InvoiceStatus.OVERDUE.value)
                | ((Invoice.status == InvoiceStatus.SENT.value) & (Invoice.due_date < today))
            )
        elif filters.status == InvoiceStatus.SENT:
            query = query.filter(
                Invoice.status == InvoiceStatus.SENT.value, Invoice.due_date >= today
            )
        elif filters.status:
            query = query.filter(Invoice.status == filters.status.value)
        if filters.recurring_due:
            query = query.filter(
                Invoice.is_recurring.is_(True),
                Invoice.next_invoice_date.isnot(None),
                Invoice.next_invoice_date <= today,
            )
        return query

    def get_all(self, filters: InvoiceFilter, today: date) -> list[Invoice]:
        return (
            self._filtered(filters, today)
            .order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc())
            .offset(filters.skip)
            .limit(filters.limit)
            .all()
        )

    def count(self, filters: InvoiceFilter, today: date) -> int:
        return int(self._filtered(filters, today).order_by(None).count())

    def get_due_recurring_page(
        self,
        today: date,
        limit: int = 500,
        after: tuple[date, UUID] | None = None,
    ) -> list[tuple[date, UUID]]:
        """One page of due recurring templates as ``(next_invoice_date, id)``.

        Pages are keyed on ``(next_invoice_date, id)``; pass the last key of a
        page as ``after`` to read the next one.
        """
        query = self.db.query(Invoice.next_invoice_date, Invoice.id).filter(
            Invoice.is_recurring.is_(True),
            Invoice.next_invoice_date.isnot(None),
            Invoice.next_invoice_date <= today,
        )
        if after is not None:
            after_date, after_id = after
            query = query.filter(
                or_(
                    Invoice.next_invoice_date > after_date,
                    and_(Invoice.next_invoice_date == after_date, Invoice.id > after_id),
                )
            )
        rows = query.order_by(Invoice.next_invoice_date.asc(), Invoice.id.asc()).limit(limit).all()
        return [(row[0], row[1]) for row in rows]

    def get_sent_past_due(self, today: date, limit: int = 500) -> list[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(Invoice.status == InvoiceStatus.SENT.value, Invoice.due_date < today)
            .order_by(Invoice.due_date.asc())
            .limit(limit)
            .all()
        )

    def totals_by_status(self, organization_id: UUID | None = None) -> dict[str, tuple[int, Decimal]]:
        query = self.db.query(Invoice.status, func.count(Invoice.id), func.sum(Invoice.total))
        if organization_id is not None:
            query = query.filter(Invoice.organization_id == organization_id)
        rows = query.group_by(Invoice.status).all()
        return {
            str(status): (int(count), Decimal(str(total or 0)))
            for status, count, total in rows
        }

    def add(self, invoice: Invoice) -> Invoice:
        self.db.add(invoice)
        return invoice

    def delete(self, invoice: Invoice) -> None:
        self.db.delete(invoice)
