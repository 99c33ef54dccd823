import logging
from typing import Any

from arq import cron

from billing_engine.services.container import BillingServices, build_services
from billing_engine.tasks import redis_settings

logger = logging.getLogger(__name__)


def _services(ctx: dict[str, Any]) -> BillingServices:
    services = ctx.get("services")
    if services is None:
        services = build_services()
        ctx["services"] = services
    return services  # type: ignore[no-any-return]


async def startup(ctx: dict[str, Any]) -> None:
    """Build the service graph once per worker process."""
    ctx["services"] = build_services()


async def generate_recurring_invoices_task(ctx: dict[str, Any]) -> int:
    """Background task: generate successor invoices for due recurring invoices.

    Runs every minute. Overlapping runs are prevented by the scheduler lease,
    so a slow pass simply causes the next tick to return early.
    """
    result = _services(ctx).scheduler.run()
    if not result.lock_acquired:
        return 0
    if result.failed:
        logger.warning(
            "Recurring invoice generation failed for %d invoices; they stay due",
            len(result.failed),
        )
    return len(result.generated)


async def refresh_overdue_invoices_task(ctx: dict[str, Any]) -> int:
    """Background task: persist the overdue status of sent invoices past due.

    Runs hourly.
    """
    count = _services(ctx).store.refresh_overdue()
    if count > 0:
        logger.info("Refreshed %d overdue invoices", count)
    return count


class WorkerSettings:
    functions = [
        generate_recurring_invoices_task,
        refresh_overdue_invoices_task,
    ]
    cron_jobs = [
        cron(generate_recurring_invoices_task, second=0),  # every minute
        cron(refresh_overdue_invoices_task, minute={0}),  # hourly
    ]
    on_startup = startup
    redis_settings = redis_settings
