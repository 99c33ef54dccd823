from fastapi import APIRouter, Depends, Query

from billing_engine.core.dependencies import get_facade, to_http_exception
from billing_engine.core.errors import BillingError
from billing_engine.schemas.billing import BillingHistoryResponse, SubscriptionResponse
from billing_engine.services.billing_facade import BillingFacade

router = APIRouter()


@router.get(
    "/subscriptions/{subscription_id}",
    response_model=SubscriptionResponse,
    summary="Get billing status",
    responses={404: {"description": "Subscription not found"}},
)
async def get_billing_status(
    subscription_id: str,
    facade: BillingFacade = Depends(get_facade),
) -> SubscriptionResponse:
    """Locally reconciled state of a provider subscription."""
    try:
        return facade.get_billing_status(subscription_id)
    except BillingError as exc:
        raise to_http_exception(exc) from None


@router.get(
    "/history",
    response_model=list[BillingHistoryResponse],
    summary="List billing history",
)
async def list_billing_history(
    customer_ref: str | None = None,
    subscription_id: str | None = None,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    facade: BillingFacade = Depends(get_facade),
) -> list[BillingHistoryResponse]:
    try:
        return facade.billing_history(
            customer_ref=customer_ref,
            subscription_id=subscription_id,
            skip=skip,
            limit=limit,
        )
    except BillingError as exc:
        raise to_http_exception(exc) from None
