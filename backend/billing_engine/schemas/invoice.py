from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from billing_engine.models.invoice import InvoiceFrequency, InvoiceStatus


class InvoiceLineItemInput(BaseModel):
    description: str = Field(min_length=1, max_length=500)
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    # Recomputed server side; a supplied value must agree with quantity * unit_price
    amount: Decimal | None = None


class InvoiceHeader(BaseModel):
    client_id: str = Field(min_length=1, max_length=255)
    invoice_number: str | None = Field(default=None, min_length=1, max_length=50)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    issue_date: date
    due_date: date
    tax: Decimal = Field(default=Decimal(0), ge=0)
    discount: Decimal = Field(default=Decimal(0), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    notes: str | None = None
    is_recurring: bool = False
    frequency: InvoiceFrequency | None = None
    next_invoice_date: date | None = None
    # Optional caller-side figures, checked against the recomputed totals
    subtotal: Decimal | None = None
    total: Decimal | None = None


class InvoiceCreate(InvoiceHeader):
    line_items: list[InvoiceLineItemInput] = Field(default_factory=list)


class InvoicePatch(BaseModel):
    invoice_number: str | None = Field(default=None, min_length=1, max_length=50)
    client_id: str | None = Field(default=None, min_length=1, max_length=255)
    status: InvoiceStatus | None = None
    issue_date: date | None = None
    due_date: date | None = None
    tax: Decimal | None = Field(default=None, ge=0)
    discount: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    notes: str | None = None
    is_recurring: bool | None = None
    frequency: InvoiceFrequency | None = None
    next_invoice_date: date | None = None
    subtotal: Decimal | None = None
    total: Decimal | None = None


class InvoiceUpdate(InvoicePatch):
    line_items: list[InvoiceLineItemInput] | None = None
    expected_version: int | None = Field(default=None, ge=1)


class DuplicateInvoiceRequest(BaseModel):
    status: InvoiceStatus = InvoiceStatus.DRAFT
    invoice_number: str | None = Field(default=None, min_length=1, max_length=50)
    issue_date: date | None = None


class InvoiceFilter(BaseModel):
    status: InvoiceStatus | None = None
    client_id: str | None = None
    recurring_due: bool = False
    organization_id: UUID | None = None
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)


class InvoiceLineItemResponse(BaseModel):
    id: UUID
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal

    model_config = {"from_attributes": True}


class InvoiceResponse(BaseModel):
    id: UUID
    organization_id: UUID
    invoice_number: str
    client_id: str
    status: InvoiceStatus
    issue_date: date
    due_date: date
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    notes: str | None
    is_recurring: bool
    frequency: InvoiceFrequency | None
    next_invoice_date: date | None
    source_invoice_id: UUID | None
    sent_at: datetime | None
    paid_at: datetime | None
    cancelled_at: datetime | None
    version: int
    line_items: list[InvoiceLineItemResponse]
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class InvoiceStatusSummary(BaseModel):
    count: int
    total: Decimal


class InvoiceSummary(BaseModel):
    total_invoices: int
    total_revenue: Decimal
    outstanding_amount: Decimal
    average_invoice_amount: Decimal
    by_status: dict[str, InvoiceStatusSummary]
