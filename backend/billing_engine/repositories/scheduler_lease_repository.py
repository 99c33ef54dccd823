"""Repository for scheduler run-lock leases."""

from datetime import datetime, timedelta

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from billing_engine.core.database import dialect_insert
from billing_engine.models.scheduler_lease import SchedulerLease


class SchedulerLeaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, name: str) -> SchedulerLease | None:
        return self.db.query(SchedulerLease).filter(SchedulerLease.name == name).first()

    def try_acquire(self, name: str, holder: str, now: datetime, ttl: timedelta) -> bool:
        """Take the lease if it is free, expired, or already ours."""
        expires_at = now + ttl
        result = self.db.execute(
            update(SchedulerLease)
            .where(
                SchedulerLease.name == name,
                or_(SchedulerLease.expires_at <= now, SchedulerLease.holder == holder),
            )
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return True

        inserted = self.db.execute(
            dialect_insert(self.db, SchedulerLease)
            .values(name=name, holder=holder, acquired_at=now, expires_at=expires_at)
            .on_conflict_do_nothing(index_elements=[SchedulerLease.name])
        )
        return bool(inserted.rowcount)

    def release(self, name: str, holder: str, now: datetime) -> bool:
        result = self.db.execute(
            update(SchedulerLease)
            .where(SchedulerLease.name == name, SchedulerLease.holder == holder)
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)
