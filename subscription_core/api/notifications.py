"""Billing provider notifications (webhook).

Implements:
- POST /notifications/qiwi - Signed bill status notification

The provider resends a notification until it gets a 200 with error "0", so
every accepted notification must be safe to apply more than once.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from subscription_core.api.dependencies import get_gateway, get_service
from subscription_core.logging_config import bind_context, get_logger
from subscription_core.models import BillNotification, InvoiceStatus, NotificationResponse
from subscription_core.repositories.subscription_store import StoreUnavailableError
from subscription_core.services.billing_gateway import SIGNATURE_HEADER, QiwiBillingGateway
from subscription_core.services.subscription_service import SubscriptionService

logger = get_logger(__name__)
router = APIRouter(tags=["Notifications"], prefix="/notifications")


@router.post(
    "/qiwi",
    response_model=NotificationResponse,
    summary="Receive bill status notification",
)
def qiwi_notification(
        notification: BillNotification,
        signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
        service: SubscriptionService = Depends(get_service),
        gateway: QiwiBillingGateway = Depends(get_gateway),
) -> NotificationResponse:
    """Apply a bill status change.

    PAID confirms the payment; REJECTED and EXPIRED drop the open invoice;
    WAITING is acknowledged and ignored.

    Raises:
        401: Signature missing or invalid
        400: Bill carries no user or tier
        503: Store unavailable (the provider retries)
    """
    bill = notification.bill
    bind_context(invoice_id=bill.billId)

    if not gateway.verify_notification_signature(bill, signature):
        logger.warning("notification_signature_invalid", status=bill.status.value.value, signature=signature)
        raise HTTPException(
            status_code=401,
            detail={"error": "Invalid signature", "message": "Notification signature check failed"},
        )

    user_id = bill.user_id
    tier_id = bill.tier_id
    if not user_id or not tier_id:
        logger.warning("notification_incomplete", user_id=user_id, tier_id=tier_id)
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid notification", "message": "Bill has no customer account or tier"},
        )

    status = bill.status.value
    logger.info("notification_received", user_id=user_id, tier_id=tier_id, status=status.value)

    try:
        if status == InvoiceStatus.PAID:
            outcome = service.confirm_payment(user_id, bill.billId, tier_id)
            return NotificationResponse(outcome=outcome.value)
        if status in (InvoiceStatus.REJECTED, InvoiceStatus.EXPIRED):
            dropped = service.expire_invoice(user_id, bill.billId)
            return NotificationResponse(outcome="dropped" if dropped else "ignored")
    except StoreUnavailableError as e:
        raise HTTPException(
            status_code=503,
            detail={"error": "Store unavailable", "message": str(e)},
        ) from e

    return NotificationResponse(outcome="ignored")
