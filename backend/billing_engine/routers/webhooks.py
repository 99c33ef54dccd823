from fastapi import APIRouter, Depends, HTTPException, Request

from billing_engine.core.dependencies import get_reconciler, to_http_exception
from billing_engine.core.errors import BillingError, ValidationError
from billing_engine.schemas.billing import ReconcileResult
from billing_engine.services.billing_reconciler import BillingEventReconciler

router = APIRouter()

SIGNATURE_HEADERS = ("Stripe-Signature", "X-Billing-Signature", "X-Signature")


@router.post(
    "/billing",
    response_model=ReconcileResult,
    summary="Receive billing provider webhook",
    responses={400: {"description": "Invalid signature or payload"}},
)
async def receive_billing_webhook(
    request: Request,
    reconciler: BillingEventReconciler = Depends(get_reconciler),
) -> ReconcileResult:
    """Verify and apply a provider event. Verified events are always acknowledged."""
    payload = await request.body()
    signature = next(
        (request.headers[name] for name in SIGNATURE_HEADERS if name in request.headers),
        None,
    )
    try:
        return reconciler.handle(payload, signature)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.detail) from None
    except BillingError as exc:
        raise to_http_exception(exc) from None
