"""Recurring Scheduler: materialises successor invoices exactly once per period."""

import logging
import socket
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from functools import partial
from uuid import UUID

from billing_engine.core.config import settings
from billing_engine.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from billing_engine.core.retry import retry_storage
from billing_engine.models.shared import utc_now
from billing_engine.repositories.scheduler_lease_repository import SchedulerLeaseRepository
from billing_engine.services.invoice_store import InvoiceStore

logger = logging.getLogger(__name__)

LEASE_NAME = "recurring-invoices"


@dataclass
class SchedulerRunResult:
    """Outcome of one scheduler pass."""

    lock_acquired: bool = True
    generated: list[UUID] = field(default_factory=list)
    skipped: dict[UUID, str] = field(default_factory=dict)
    failed: dict[UUID, str] = field(default_factory=dict)


class RecurringScheduler:
    """Scans for due recurring invoices and generates their successors.

    A pass holds a database lease so overlapping ticks never process the same
    candidate set twice. Each candidate runs in its own transaction; a failure
    is recorded and the pass moves on.
    """

    def __init__(
        self,
        store: InvoiceStore,
        lease_ttl: timedelta | None = None,
        holder: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] | None = None,
        batch_size: int | None = None,
    ):
        self.store = store
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        self.lease_ttl = lease_ttl or timedelta(seconds=settings.SCHEDULER_LEASE_SECONDS)
        self.holder = holder or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self.clock = clock
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    # Lease handling

    def _lease(self, action: Callable[[SchedulerLeaseRepository], bool]) -> bool:
        with self.store.transaction() as db:
            return action(SchedulerLeaseRepository(db))

    def acquire_lease(self, now: datetime) -> bool:
        return self._lease(
            lambda repo: repo.try_acquire(LEASE_NAME, self.holder, now, self.lease_ttl)
        )

    def release_lease(self) -> bool:
        return self._lease(lambda repo: repo.release(LEASE_NAME, self.holder, self.clock()))

    # Pass

    def run(self, today: date | None = None) -> SchedulerRunResult:
        """Run one scheduler pass.

        Args:
            today: Business date of the pass; defaults to the clock's date.

        Returns:
            A ``SchedulerRunResult``. ``lock_acquired`` is False when another
            pass holds the lease, in which case nothing was processed.
        """
        now = self.clock()
        run_date = today or now.date()

        if not self.acquire_lease(now):
            logger.info("Recurring scheduler pass skipped: lease held by another worker")
            return SchedulerRunResult(lock_acquired=False)

        result = SchedulerRunResult()
        try:
            self._process_due(run_date, result)
        finally:
            self.release_lease()

        logger.info(
            "Recurring scheduler pass for %s: %d generated, %d skipped, %d failed",
            run_date,
            len(result.generated),
            len(result.skipped),
            len(result.failed),
        )
        return result

    def _process_due(self, run_date: date, result: SchedulerRunResult) -> None:
        """Walk every due template page by page.

        Skipped and failed templates stay due, so paging past them keeps them
        from filling every page. A template advanced during this pass can
        reappear on a later page and is not processed twice.
        """
        seen: set[UUID] = set()
        cursor: tuple[date, UUID] | None = None
        while True:
            page = retry_storage(
                partial(self.store.due_recurring_page, run_date, self.batch_size, cursor),
                **self._retry_kwargs,
            )
            for _, invoice_id in page:
                if invoice_id not in seen:
                    seen.add(invoice_id)
                    self._process_candidate(invoice_id, run_date, result)
            if len(page) < self.batch_size:
                return
            cursor = page[-1]

    def _process_candidate(
        self, invoice_id: UUID, run_date: date, result: SchedulerRunResult
    ) -> None:
        try:
            # Client lookup happens before the generating transaction opens
            source = self.store.get_invoice(invoice_id)
            if not self.store.client_directory.client_exists(source.client_id):
                logger.warning(
                    "Skipping recurring invoice %s: client %s no longer resolves",
                    source.invoice_number,
                    source.client_id,
                )
                result.skipped[invoice_id] = "client_not_found"
                return

            successor = retry_storage(
                lambda: self.store.generate_successor(invoice_id, run_date),
                **self._retry_kwargs,
            )
        except NotFoundError:
            result.skipped[invoice_id] = "not_found"
            return
        except InvalidTransitionError as exc:
            logger.warning("Skipping recurring invoice %s: %s", invoice_id, exc.detail)
            result.skipped[invoice_id] = "cancelled"
            return
        except (StorageError, ValidationError) as exc:
            logger.exception("Recurring invoice %s failed: %s", invoice_id, exc.detail)
            result.failed[invoice_id] = exc.detail
            return

        if successor is None:
            # Another pass (or a retry) already advanced this schedule
            result.skipped[invoice_id] = "not_due"
        else:
            result.generated.append(successor.id)

