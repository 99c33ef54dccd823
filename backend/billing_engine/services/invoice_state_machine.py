"""Invoice status state machine.

Pure functions only: no database access and no clock reads. Callers pass
``now`` explicitly.

    draft -> sent -> paid
    sent -> overdue            (derived from the due date, never requested)
    overdue -> paid
    draft | sent | overdue -> cancelled

``paid`` and ``cancelled`` are terminal.
"""

from datetime import date, datetime

from billing_engine.core.errors import InvalidTransitionError, ValidationError
from billing_engine.models.invoice import InvoiceStatus

TERMINAL_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED})
INITIAL_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.SENT})

_ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.CANCELLED}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def is_terminal(status: InvoiceStatus | str) -> bool:
    return InvoiceStatus(status) in TERMINAL_STATUSES


def derive_status(
    status: InvoiceStatus | str, due_date: date | None, now: date | datetime
) -> InvoiceStatus:
    """Report the effective status of an invoice at ``now``.

    A ``sent`` invoice whose due date has passed is ``overdue``. Every other
    status is returned unchanged, so the function is idempotent and can never
    downgrade ``paid`` or ``cancelled``.
    """
    current = InvoiceStatus(status)
    if current == InvoiceStatus.SENT and due_date is not None and due_date < _as_date(now):
        return InvoiceStatus.OVERDUE
    return current


def apply_transition(
    current: InvoiceStatus | str,
    requested: InvoiceStatus | str,
    now: date | datetime,
    due_date: date | None = None,
) -> InvoiceStatus:
    """Validate a requested status change and return the resulting status.

    Args:
        current: Status currently stored (after overdue derivation).
        requested: Status the caller asked for.
        now: Evaluation time, used to derive ``overdue`` for ``sent``.
        due_date: Invoice due date; when given, the result is derived.

    Returns:
        The new status.

    Raises:
        InvalidTransitionError: If the change is not allowed.
    """
    current_status = InvoiceStatus(current)
    requested_status = InvoiceStatus(requested)

    if current_status in TERMINAL_STATUSES:
        if requested_status == current_status:
            return current_status
        raise InvalidTransitionError(current_status.value, requested_status.value)

    if requested_status == current_status:
        return derive_status(current_status, due_date, now)

    if requested_status == InvoiceStatus.OVERDUE:
        # Time-triggered only
        raise InvalidTransitionError(current_status.value, requested_status.value)

    if requested_status not in _ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(current_status.value, requested_status.value)

    return derive_status(requested_status, due_date, now)


def validate_initial_status(status: InvoiceStatus | str) -> InvoiceStatus:
    """New invoices start as ``draft``; ``sent`` is allowed for imports and duplicates."""
    initial = InvoiceStatus(status)
    if initial not in INITIAL_STATUSES:
        raise ValidationError(
            f"Invoices cannot be created with status '{initial.value}'",
            status=initial.value,
        )
    return initial


def ensure_can_generate(source_status: InvoiceStatus | str) -> None:
    """Check that a recurring template may materialise a new draft successor."""
    status = InvoiceStatus(source_status)
    if status == InvoiceStatus.CANCELLED:
        raise InvalidTransitionError(status.value, InvoiceStatus.DRAFT.value)
