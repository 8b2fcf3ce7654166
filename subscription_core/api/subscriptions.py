"""Subscription API used by the front end.

Implements:
- POST /subscriptions/{tier_id} - Buy a tier, returns the pay link
- POST /subscriptions/{tier_id}/renew - Renew an active subscription
- GET /subscriptions/me - Current subscription status
"""

from fastapi import APIRouter, Depends, HTTPException

from subscription_core.api.dependencies import get_service, get_user_id
from subscription_core.logging_config import get_logger
from subscription_core.models import ErrorResponse, Invoice, PurchaseResponse, StatusResponse
from subscription_core.repositories.subscription_store import (
    AlreadyPendingError,
    AlreadySubscribedError,
    NotSubscribedError,
    StoreUnavailableError,
)
from subscription_core.repositories.tier_repository import UnknownTierError
from subscription_core.services.billing_gateway import GatewayUnavailableError
from subscription_core.services.subscription_service import SubscriptionService

logger = get_logger(__name__)
router = APIRouter(tags=["Subscriptions"], prefix="/subscriptions")

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Tier not found"},
    409: {"model": ErrorResponse, "description": "Subscription state conflict"},
    502: {"model": ErrorResponse, "description": "Billing provider unavailable"},
    503: {"model": ErrorResponse, "description": "Store unavailable"},
}


def _to_response(invoice: Invoice) -> PurchaseResponse:
    return PurchaseResponse(
        pay_url=invoice.pay_url,
        invoice_id=invoice.invoice_id,
        tier_id=invoice.tier_id,
        amount_micros=invoice.amount_micros,
        currency=invoice.currency,
        expiration_time_millis=invoice.expiration_time_millis,
    )


def _raise_http(e: Exception, tier_id: str) -> None:
    """Map service errors to HTTP errors."""
    if isinstance(e, UnknownTierError):
        logger.warning("tier_not_found", tier_id=tier_id)
        raise HTTPException(
            status_code=404,
            detail={
                "error": "Tier not found",
                "message": f"Tier '{tier_id}' does not exist in the catalogue",
            },
        ) from e
    if isinstance(e, AlreadySubscribedError):
        raise HTTPException(
            status_code=409,
            detail={"error": "Already subscribed", "message": str(e)},
        ) from e
    if isinstance(e, AlreadyPendingError):
        raise HTTPException(
            status_code=409,
            detail={"error": "Invoice pending", "message": str(e)},
        ) from e
    if isinstance(e, NotSubscribedError):
        raise HTTPException(
            status_code=409,
            detail={"error": "Not subscribed", "message": str(e)},
        ) from e
    if isinstance(e, GatewayUnavailableError):
        raise HTTPException(
            status_code=502,
            detail={"error": "Billing unavailable", "message": "Payment provider could not create the invoice"},
        ) from e
    if isinstance(e, StoreUnavailableError):
        raise HTTPException(
            status_code=503,
            detail={"error": "Store unavailable", "message": "Subscription state could not be saved"},
        ) from e
    raise e


@router.get(
    "/me",
    response_model=StatusResponse,
    summary="Get subscription status",
)
def get_status(
        user_id: str = Depends(get_user_id),
        service: SubscriptionService = Depends(get_service),
) -> StatusResponse:
    """Get the caller's subscription status.

    Returns:
        StatusResponse with state, tier, expiry and the open invoice if any
    """
    record = service.status(user_id)
    return StatusResponse(
        user_id=user_id,
        state=record.state.name,
        subscribe_code=service.subscribe_code(user_id).value,
        tier_id=record.tier_id,
        expiry_time_millis=record.expiry_time_millis,
        pending_invoice_id=record.pending_invoice_id,
        pending_tier_id=record.pending_tier_id,
    )


@router.post(
    "/{tier_id}",
    response_model=PurchaseResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    summary="Buy a subscription tier",
)
def purchase(
        tier_id: str,
        user_id: str = Depends(get_user_id),
        service: SubscriptionService = Depends(get_service),
) -> PurchaseResponse:
    """Open an invoice for a tier and return the payment link.

    Raises:
        404: Tier not found
        409: Already subscribed, or an invoice is already pending
        502: Billing provider unavailable
        503: Store unavailable
    """
    logger.info("purchase_request", user_id=user_id, tier_id=tier_id)
    try:
        invoice = service.purchase(user_id, tier_id)
    except (
        UnknownTierError,
        AlreadySubscribedError,
        AlreadyPendingError,
        GatewayUnavailableError,
        StoreUnavailableError,
    ) as e:
        _raise_http(e, tier_id)
    return _to_response(invoice)


@router.post(
    "/{tier_id}/renew",
    response_model=PurchaseResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    summary="Renew an active subscription",
)
def renew(
        tier_id: str,
        user_id: str = Depends(get_user_id),
        service: SubscriptionService = Depends(get_service),
) -> PurchaseResponse:
    """Open a renewal invoice. The subscription stays active until it is paid.

    Raises:
        404: Tier not found
        409: No active subscription, or a renewal invoice is already pending
        502: Billing provider unavailable
        503: Store unavailable
    """
    logger.info("renew_request", user_id=user_id, tier_id=tier_id)
    try:
        invoice = service.renew(user_id, tier_id)
    except (
        UnknownTierError,
        NotSubscribedError,
        AlreadyPendingError,
        GatewayUnavailableError,
        StoreUnavailableError,
    ) as e:
        _raise_http(e, tier_id)
    return _to_response(invoice)
