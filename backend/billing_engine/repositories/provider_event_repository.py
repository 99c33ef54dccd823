"""Repository for the provider event idempotency log."""

from sqlalchemy.orm import Session

from billing_engine.core.database import dialect_insert
from billing_engine.models.provider_event import ProviderEvent
from billing_engine.models.shared import generate_uuid


class ProviderEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_event_id(self, event_id: str) -> ProviderEvent | None:
        return self.db.query(ProviderEvent).filter(ProviderEvent.event_id == event_id).first()

    def record(self, *, event_id: str, event_type: str, outcome: str) -> bool:
        stmt = (
            dialect_insert(self.db, ProviderEvent)
            .values(
                id=generate_uuid(),
                event_id=event_id,
                event_type=event_type,
                outcome=outcome,
            )
            .on_conflict_do_nothing(index_elements=[ProviderEvent.event_id])
        )
        result = self.db.execute(stmt)
        return bool(result.rowcount)
