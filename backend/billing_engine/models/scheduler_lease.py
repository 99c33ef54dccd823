"""SchedulerLease model: run-lock rows for periodic background passes."""

from sqlalchemy import Column, DateTime, String

from billing_engine.core.database import Base


class SchedulerLease(Base):
    __tablename__ = "scheduler_leases"

    name = Column(String(100), primary_key=True)
    holder = Column(String(255), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
