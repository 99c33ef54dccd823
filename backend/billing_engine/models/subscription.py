from enum import Enum

from sqlalchemy import BigInteger, Boolean, Column, DateTime, String, func

from billing_engine.core.database import Base


class SubscriptionStatus(str, Enum):
    """Provider subscription vocabulary (Stripe)."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCELED = "canceled"


class Subscription(Base):
    """Local mirror of a provider subscription, written only by reconciliation."""

    __tablename__ = "subscriptions"

    subscription_id = Column(String(255), primary_key=True)
    customer_ref = Column(String(255), nullable=False, index=True)
    plan_id = Column(String(255), nullable=True)
    status = Column(String(30), nullable=False, default=SubscriptionStatus.INCOMPLETE.value)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    # Version signal of the last applied event (anti-regression)
    last_event_version = Column(BigInteger, nullable=False, default=0)
    last_event_id = Column(String(255), nullable=False, default="")

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
