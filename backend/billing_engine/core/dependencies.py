from uuid import UUID

from fastapi import HTTPException, Request

from billing_engine.core.errors import (
    BillingError,
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    UnauthenticatedEventError,
    ValidationError,
)
from billing_engine.models.shared import DEFAULT_ORGANIZATION_ID
from billing_engine.services.billing_facade import BillingFacade
from billing_engine.services.billing_reconciler import BillingEventReconciler

# Most specific first: ConcurrentModificationError is a StorageError
_STATUS_CODES: list[tuple[type[BillingError], int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (InvalidTransitionError, 400),
    (UnauthenticatedEventError, 400),
    (ConcurrentModificationError, 409),
    (StorageError, 503),
]


def to_http_exception(exc: BillingError) -> HTTPException:
    """Translate a billing error into the HTTP response the API promises."""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.detail)
    return HTTPException(status_code=500, detail=exc.detail)


def get_current_organization(request: Request) -> UUID:
    """Issuing organization from ``X-Organization-Id``, else the default one."""
    org_id_header = request.headers.get("X-Organization-Id")
    if org_id_header:
        try:
            return UUID(org_id_header)
        except ValueError:
            raise HTTPException(
                status_code=400, detail="Invalid X-Organization-Id header"
            ) from None
    return DEFAULT_ORGANIZATION_ID


def get_facade(request: Request) -> BillingFacade:
    facade: BillingFacade = request.app.state.facade
    return facade


def get_reconciler(request: Request) -> BillingEventReconciler:
    reconciler: BillingEventReconciler = request.app.state.reconciler
    return reconciler
