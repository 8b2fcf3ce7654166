"""API request and response models for the HTTP surface."""

from typing import Optional

from pydantic import BaseModel, Field


class PurchaseResponse(BaseModel):
    """Response after opening an invoice for a tier."""

    pay_url: str = Field(..., description="Provider payment page for the user")
    invoice_id: str = Field(..., description="Invoice id used to correlate confirmation")
    tier_id: str = Field(..., description="Purchased tier")
    amount_micros: int = Field(..., description="Amount in micros")
    currency: str = Field(..., description="ISO 4217 currency code")
    expiration_time_millis: int = Field(..., description="When the unpaid invoice lapses")

    class Config:
        json_schema_extra = {
            "example": {
                "pay_url": "https://oplata.qiwi.com/form/?invoice_uid=d875277b",
                "invoice_id": "sub_a1b2c3d4e5f6a7b8_1700000000000",
                "tier_id": "1_month",
                "amount_micros": 199000000,
                "currency": "RUB",
                "expiration_time_millis": 1700003600000,
            }
        }


class StatusResponse(BaseModel):
    """Current subscription status of a user."""

    user_id: str = Field(..., description="User identity")
    state: str = Field(..., description="NONE, PENDING or ACTIVE")
    subscribe_code: int = Field(..., description="1 = subscribed, 2 = not subscribed")
    tier_id: Optional[str] = Field(None, description="Active tier")
    expiry_time_millis: Optional[int] = Field(None, description="Expiry of the active subscription")
    pending_invoice_id: Optional[str] = Field(None, description="Open invoice, if any")
    pending_tier_id: Optional[str] = Field(None, description="Tier of the open invoice")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "alice",
                "state": "ACTIVE",
                "subscribe_code": 1,
                "tier_id": "1_month",
                "expiry_time_millis": 1702592000000,
                "pending_invoice_id": None,
                "pending_tier_id": None,
            }
        }


class NotificationResponse(BaseModel):
    """Acknowledgement returned to the billing provider."""

    error: str = Field(default="0", description="Provider expects '0' for an accepted notification")
    outcome: Optional[str] = Field(None, description="activated, already_applied, stale, dropped or ignored")


class ErrorResponse(BaseModel):
    """Error body returned by the API."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable message")
