from billing_engine.schemas.billing import (
    BillingHistoryResponse,
    ProviderEventPayload,
    ReconcileResult,
    SubscriptionResponse,
)
from billing_engine.schemas.invoice import (
    DuplicateInvoiceRequest,
    InvoiceCreate,
    InvoiceFilter,
    InvoiceHeader,
    InvoiceLineItemInput,
    InvoiceLineItemResponse,
    InvoicePatch,
    InvoiceResponse,
    InvoiceStatusSummary,
    InvoiceSummary,
    InvoiceUpdate,
)

__all__ = [
    "BillingHistoryResponse",
    "DuplicateInvoiceRequest",
    "InvoiceCreate",
    "InvoiceFilter",
    "InvoiceHeader",
    "InvoiceLineItemInput",
    "InvoiceLineItemResponse",
    "InvoicePatch",
    "InvoiceResponse",
    "InvoiceStatusSummary",
    "InvoiceSummary",
    "InvoiceUpdate",
    "ProviderEventPayload",
    "ReconcileResult",
    "SubscriptionResponse",
]
