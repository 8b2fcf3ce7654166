"""Invoice models for the P2P billing provider."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class InvoiceStatus(str, Enum):
    """Bill status values reported by the provider."""

    WAITING = "WAITING"  # Created, not paid yet
    PAID = "PAID"  # Paid, subscription may be activated
    REJECTED = "REJECTED"  # Rejected by the payer or merchant
    EXPIRED = "EXPIRED"  # Lifetime ended without payment

    @property
    def is_final(self) -> bool:
        return self is not InvoiceStatus.WAITING


class Invoice(BaseModel):
    """Invoice opened with the billing provider for one tier purchase."""

    invoice_id: str = Field(..., description="Locally generated bill id")
    user_id: str = Field(..., description="Paying user")
    tier_id: str = Field(..., description="Purchased tier")
    amount_micros: int = Field(..., description="Amount in micros")
    currency: str = Field(default="RUB", description="ISO 4217 currency code")
    pay_url: str = Field(..., description="Provider payment page")
    status: InvoiceStatus = Field(default=InvoiceStatus.WAITING, description="Provider bill status")
    expiration_time_millis: int = Field(..., description="When the unpaid invoice lapses (Unix millis)")
    renewal: bool = Field(default=False, description="Whether this invoice renews an active subscription")

    class Config:
        json_schema_extra = {
            "example": {
                "invoice_id": "sub_a1b2c3d4e5f6a7b8_1700000000000",
                "user_id": "alice",
                "tier_id": "1_month",
                "amount_micros": 199000000,
                "currency": "RUB",
                "pay_url": "https://oplata.qiwi.com/form/?invoice_uid=d875277b-6f0f-445d-8a83-f62c7c07be77",
                "status": InvoiceStatus.WAITING,
                "expiration_time_millis": 1700003600000,
                "renewal": False,
            }
        }


class BillAmount(BaseModel):
    """Amount block of a provider bill."""

    currency: str
    value: str


class BillStatus(BaseModel):
    """Status block of a provider bill."""

    value: InvoiceStatus
    changedDateTime: Optional[str] = None


class BillCustomer(BaseModel):
    """Customer block of a provider bill."""

    account: Optional[str] = None


class Bill(BaseModel):
    """Provider bill as delivered in webhook notifications and status lookups."""

    siteId: str = ""
    billId: str
    amount: BillAmount
    status: BillStatus
    customer: BillCustomer = Field(default_factory=BillCustomer)
    customFields: dict[str, str] = Field(default_factory=dict)
    payUrl: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.customer.account

    @property
    def tier_id(self) -> Optional[str]:
        return self.customFields.get("tier")


class BillNotification(BaseModel):
    """Webhook payload sent by the provider when a bill changes status."""

    bill: Bill
    version: str = "1"
