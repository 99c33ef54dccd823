from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response

from billing_engine.core.dependencies import (
    get_current_organization,
    get_facade,
    to_http_exception,
)
from billing_engine.core.errors import BillingError
from billing_engine.models.invoice import InvoiceStatus
from billing_engine.schemas.invoice import (
    DuplicateInvoiceRequest,
    InvoiceCreate,
    InvoiceFilter,
    InvoiceResponse,
    InvoiceSummary,
    InvoiceUpdate,
)
from billing_engine.services.billing_facade import BillingFacade

router = APIRouter()


def _parse_if_match(if_match: str | None) -> int | None:
    """Read a version number from an ``If-Match`` header such as ``"3"`` or ``W/"3"``."""
    if not if_match:
        return None
    value = if_match.strip()
    if value.startswith("W/"):
        value = value[2:]
    try:
        return int(value.strip('"'))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid If-Match header") from None


@router.get(
    "/",
    response_model=list[InvoiceResponse],
    summary="List invoices",
)
async def list_invoices(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    status: InvoiceStatus | None = None,
    client_id: str | None = None,
    recurring_due: bool = False,
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> list[InvoiceResponse]:
    """List invoices with optional filters."""
    filters = InvoiceFilter(
        status=status,
        client_id=client_id,
        recurring_due=recurring_due,
        organization_id=organization_id,
        skip=skip,
        limit=limit,
    )
    try:
        response.headers["X-Total-Count"] = str(facade.count_invoices(filters))
        return facade.list_invoices(filters)
    except BillingError as exc:
        raise to_http_exception(exc) from None


@router.post(
    "/",
    response_model=InvoiceResponse,
    status_code=201,
    summary="Create invoice",
    responses={422: {"description": "Validation error"}},
)
async def create_invoice(
    data: InvoiceCreate,
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> InvoiceResponse:
    """Create an invoice with its line items."""
    try:
        return facade.create_invoice(data, organization_id)
    except BillingError as exc:
        raise to_http_exception(exc) from None


@router.get(
    "/summary",
    response_model=InvoiceSummary,
    summary="Invoice summary",
)
async def invoice_summary(
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> InvoiceSummary:
    """Counts and amounts per status, revenue and outstanding totals."""
    try:
        return facade.invoice_summary(organization_id)
    except BillingError as exc:
        raise to_http_exception(exc) from None


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get invoice",
    responses={404: {"description": "Invoice not found"}},
)
async def get_invoice(
    invoice_id: UUID,
    response: Response,
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> InvoiceResponse:
    """Get an invoice by ID."""
    try:
        invoice = facade.get_invoice(invoice_id, organization_id)
    except BillingError as exc:
        raise to_http_exception(exc) from None
    response.headers["ETag"] = f'"{invoice.version}"'
    return invoice


@router.put(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Update invoice",
    responses={
        400: {"description": "Invalid status transition"},
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice was modified concurrently"},
        422: {"description": "Validation error"},
    },
)
async def update_invoice(
    invoice_id: UUID,
    data: InvoiceUpdate,
    response: Response,
    if_match: str | None = Header(default=None),
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> InvoiceResponse:
    """Update an invoice; ``If-Match`` or ``expected_version`` makes it conditional."""
    if data.expected_version is None:
        header_version = _parse_if_match(if_match)
        if header_version is not None:
            data = data.model_copy(update={"expected_version": header_version})
    try:
        invoice = facade.update_invoice(invoice_id, data, organization_id)
    except BillingError as exc:
        raise to_http_exception(exc) from None
    response.headers["ETag"] = f'"{invoice.version}"'
    return invoice


@router.delete(
    "/{invoice_id}",
    status_code=204,
    summary="Delete invoice",
)
async def delete_invoice(
    invoice_id: UUID,
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> None:
    """Delete an invoice. Deleting a missing invoice succeeds."""
    try:
        facade.delete_invoice(invoice_id, organization_id)
    except BillingError as exc:
        raise to_http_exception(exc) from None


@router.post(
    "/{invoice_id}/send",
    response_model=InvoiceResponse,
    summary="Mark invoice as sent",
    responses={
        400: {"description": "Invoice cannot be sent in current state"},
        404: {"description": "Invoice not found"},
    },
)
async def send_invoice(
    invoice_id: UUID,
    if_match: str | None = Header(default=None),
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> InvoiceResponse:
    """Mark an invoice as sent and hand it to the delivery collaborator."""
    try:
        return facade.mark_sent(invoice_id, organization_id, _parse_if_match(if_match))
    except BillingError as exc:
        raise to_http_exception(exc) from None


@router.post(
    "/{invoice_id}/mark-paid",
    response_model=InvoiceResponse,
    summary="Mark invoice as paid",
    responses={
        400: {"description": "Invoice cannot be marked paid in current state"},
        404: {"description": "Invoice not found"},
    },
)
async def mark_invoice_paid(
    invoice_id: UUID,
    if_match: str | None = Header(default=None),
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> InvoiceResponse:
    try:
        return facade.mark_paid(invoice_id, organization_id, _parse_if_match(if_match))
    except BillingError as exc:
        raise to_http_exception(exc) from None


@router.post(
    "/{invoice_id}/cancel",
    response_model=InvoiceResponse,
    summary="Cancel invoice",
    responses={
        400: {"description": "Invoice cannot be cancelled in current state"},
        404: {"description": "Invoice not found"},
    },
)
async def cancel_invoice(
    invoice_id: UUID,
    if_match: str | None = Header(default=None),
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> InvoiceResponse:
    try:
        return facade.cancel_invoice(invoice_id, organization_id, _parse_if_match(if_match))
    except BillingError as exc:
        raise to_http_exception(exc) from None


@router.post(
    "/{invoice_id}/duplicate",
    response_model=InvoiceResponse,
    status_code=201,
    summary="Duplicate invoice",
    responses={404: {"description": "Invoice not found"}},
)
async def duplicate_invoice(
    invoice_id: UUID,
    data: DuplicateInvoiceRequest | None = None,
    facade: BillingFacade = Depends(get_facade),
    organization_id: UUID = Depends(get_current_organization),
) -> InvoiceResponse:
    """Copy an invoice and its line items into a new draft."""
    try:
        return facade.duplicate_invoice(
            invoice_id, data or DuplicateInvoiceRequest(), organization_id
        )
    except BillingError as exc:
        raise to_http_exception(exc) from None
