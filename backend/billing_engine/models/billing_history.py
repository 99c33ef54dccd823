from enum import Enum

from sqlalchemy import Column, DateTime, Numeric, String, func

from billing_engine.core.database import Base
from billing_engine.models.shared import UUIDType, generate_uuid


class BillingHistoryStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BillingHistoryEntry(Base):
    """Append-only record of a provider invoice payment outcome."""

    __tablename__ = "billing_history"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    provider_invoice_id = Column(String(255), nullable=False, unique=True, index=True)
    customer_ref = Column(String(255), nullable=False, index=True)
    subscription_id = Column(String(255), nullable=True, index=True)
    amount = Column(Numeric(12, 4), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False)
    description = Column(String(500), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
