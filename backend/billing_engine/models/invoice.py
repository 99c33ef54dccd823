from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from billing_engine.core.database import Base
from billing_engine.models.shared import DEFAULT_ORGANIZATION_ID, UUIDType, generate_uuid


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class InvoiceFrequency(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("organization_id", "invoice_number", name="uq_org_invoice_number"),
        CheckConstraint("due_date >= issue_date", name="ck_invoices_due_after_issue"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    organization_id = Column(
        UUIDType, nullable=False, index=True, default=DEFAULT_ORGANIZATION_ID
    )
    invoice_number = Column(String(50), nullable=False, index=True)
    client_id = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value, index=True)

    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)

    # Amounts (stored as Decimal with 4 decimal places for precision)
    subtotal = Column(Numeric(12, 4), nullable=False, default=0)
    tax = Column(Numeric(12, 4), nullable=False, default=0)
    discount = Column(Numeric(12, 4), nullable=False, default=0)
    total = Column(Numeric(12, 4), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    notes = Column(Text, nullable=True)

    # Recurrence
    is_recurring = Column(Boolean, nullable=False, default=False)
    frequency = Column(String(20), nullable=True)
    next_invoice_date = Column(Date, nullable=True, index=True)
    source_invoice_id = Column(
        UUIDType, ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True, index=True
    )

    sent_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="InvoiceLineItem.position",
        lazy="selectin",
    )

    # The store bumps the version itself on every write, so line-item-only
    # changes still advance it
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}


class InvoiceLineItem(Base):
    __tablename__ = "invoice_line_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_line_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_line_items_unit_price_non_negative"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    invoice_id = Column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False, default=0)
    description = Column(String(500), nullable=False)
    quantity = Column(Numeric(12, 4), nullable=False)
    unit_price = Column(Numeric(12, 4), nullable=False)
    amount = Column(Numeric(12, 4), nullable=False)

    invoice = relationship("Invoice", back_populates="line_items")
