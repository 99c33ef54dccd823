"""Calendar rules for recurring invoice schedules."""

import calendar as cal
from datetime import date, timedelta

from billing_engine.models.invoice import InvoiceFrequency

_MONTH_STEPS = {
    InvoiceFrequency.MONTHLY.value: 1,
    InvoiceFrequency.QUARTERLY.value: 3,
    InvoiceFrequency.ANNUALLY.value: 12,
}

_DAY_STEPS = {
    InvoiceFrequency.WEEKLY.value: 7,
    InvoiceFrequency.BIWEEKLY.value: 14,
}


def _add_months(d: date, months: int) -> date:
    """Add months to a date, clamping to last day of month."""
    month = d.month - 1 + months
    year = d.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(d.day, max_day)
    return d.replace(year=year, month=month, day=day)


def advance(d: date, frequency: InvoiceFrequency | str) -> date:
    """Move a date forward by one period of ``frequency``."""
    value = InvoiceFrequency(frequency).value
    if value in _DAY_STEPS:
        return d + timedelta(days=_DAY_STEPS[value])
    return _add_months(d, _MONTH_STEPS[value])


def payment_term(issue_date: date, due_date: date) -> timedelta:
    """Length of the payment term of an invoice."""
    return due_date - issue_date


def successor_dates(source_issue: date, source_due: date, today: date) -> tuple[date, date]:
    """Issue and due dates for a successor invoice generated on ``today``.

    The successor keeps the source's payment term.

    Returns:
        Tuple of (issue_date, due_date).
    """
    return today, today + payment_term(source_issue, source_due)


def is_due(next_invoice_date: date | None, today: date) -> bool:
    return next_invoice_date is not None and next_invoice_date <= today
