"""ProviderEvent model: log of verified provider webhook events."""

from enum import Enum

from sqlalchemy import Column, DateTime, String, func

from billing_engine.core.database import Base
from billing_engine.models.shared import UUIDType, generate_uuid


class EventOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"
    # Reported for a re-delivered event id; never stored
    DUPLICATE = "duplicate"


class ProviderEvent(Base):
    __tablename__ = "provider_events"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False)
    outcome = Column(String(20), nullable=False)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
