from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from billing_engine.core.database import dialect_insert
from billing_engine.models.billing_history import BillingHistoryEntry
from billing_engine.models.shared import generate_uuid


class BillingHistoryRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_provider_invoice_id(
        self, provider_invoice_id: str, for_update: bool = False
    ) -> BillingHistoryEntry | None:
        query = self.db.query(BillingHistoryEntry).filter(
            BillingHistoryEntry.provider_invoice_id == provider_invoice_id
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def insert_if_absent(
        self,
        *,
        provider_invoice_id: str,
        customer_ref: str,
        subscription_id: str | None,
        amount: Decimal,
        currency: str,
        status: str,
        description: str | None,
        occurred_at: datetime,
    ) -> bool:
        """Insert an entry unless one exists for ``provider_invoice_id``.

        Returns:
            True if a row was inserted, False for a duplicate.
        """
        stmt = (
            dialect_insert(self.db, BillingHistoryEntry)
            .values(
                id=generate_uuid(),
                provider_invoice_id=provider_invoice_id,
                customer_ref=customer_ref,
                subscription_id=subscription_id,
                amount=amount,
                currency=currency,
                status=status,
                description=description,
                occurred_at=occurred_at,
            )
            .on_conflict_do_nothing(index_elements=[BillingHistoryEntry.provider_invoice_id])
        )
        result = self.db.execute(stmt)
        return bool(result.rowcount)

    def get_all(
        self,
        customer_ref: str | None = None,
        subscription_id: str | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[BillingHistoryEntry]:
        query = self.db.query(BillingHistoryEntry)
        if customer_ref:
            query = query.filter(BillingHistoryEntry.customer_ref == customer_ref)
        if subscription_id:
            query = query.filter(BillingHistoryEntry.subscription_id == subscription_id)
        return (
            query.order_by(BillingHistoryEntry.occurred_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
