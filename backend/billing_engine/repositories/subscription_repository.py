from sqlalchemy.orm import Session

from billing_engine.core.database import dialect_insert
from billing_engine.core.errors import StorageError
from billing_engine.models.subscription import Subscription, SubscriptionStatus


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, subscription_id: str, for_update: bool = False) -> Subscription | None:
        query = self.db.query(Subscription).filter(
            Subscription.subscription_id == subscription_id
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_or_create_for_update(self, subscription_id: str, customer_ref: str) -> Subscription:
        """Lock the row for ``subscription_id``, inserting an empty one if missing.

        The placeholder carries version 0 so any real event supersedes it.
        """
        insert_stmt = (
            dialect_insert(self.db, Subscription)
            .values(
                subscription_id=subscription_id,
                customer_ref=customer_ref,
                status=SubscriptionStatus.INCOMPLETE.value,
                cancel_at_period_end=False,
                last_event_version=0,
                last_event_id="",
            )
            .on_conflict_do_nothing(index_elements=[Subscription.subscription_id])
        )
        self.db.execute(insert_stmt)
        subscription = self.get_by_id(subscription_id, for_update=True)
        if subscription is None:
            raise StorageError(
                "Subscription row vanished after upsert", subscription_id=subscription_id
            )
        return subscription
