from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class SubscriptionResponse(BaseModel):
    subscription_id: str
    customer_ref: str
    plan_id: str | None
    status: str
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    last_event_version: int
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class BillingHistoryResponse(BaseModel):
    id: UUID
    provider_invoice_id: str
    customer_ref: str
    subscription_id: str | None
    amount: Decimal
    currency: str
    status: str
    description: str | None
    occurred_at: datetime
    created_at: datetime | None

    model_config = {"from_attributes": True}


class ProviderEventPayload(BaseModel):
    """A verified provider event (Stripe event shape)."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int = 0
    # Explicit provider sequence number; preferred over ``created`` when present
    sequence: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def data_object(self) -> dict[str, Any]:
        obj = self.data.get("object", {})
        return obj if isinstance(obj, dict) else {}

    @property
    def version(self) -> int:
        return self.sequence if self.sequence is not None else self.created


class ReconcileResult(BaseModel):
    event_id: str
    event_type: str
    outcome: str
    detail: str | None = None
