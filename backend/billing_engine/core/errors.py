"""Error taxonomy shared by the store, scheduler, reconciler and facade.

Routers translate these into HTTP responses; background tasks log them and
leave the work for the next natural trigger (next tick, next redelivery).
"""

from typing import Any


class BillingError(Exception):
    """Base class for every error raised by the billing engine."""

    def __init__(self, detail: str, **context: Any):
        super().__init__(detail)
        self.detail = detail
        self.context = context


class ValidationError(BillingError):
    """Input shape or invariant violation. Never retried automatically."""


class NotFoundError(BillingError):
    """The requested record does not exist."""


class InvalidTransitionError(BillingError):
    """An illegal invoice status change was requested."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot transition invoice from '{current}' to '{requested}'",
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class UnauthenticatedEventError(BillingError):
    """A provider event failed signature verification."""


class StorageError(BillingError):
    """Transient persistence failure."""


class ConcurrentModificationError(StorageError):
    """Another writer changed the record first; re-read and retry."""
