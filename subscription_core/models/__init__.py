"""Pydantic models for configuration, domain state and the API."""

# Tier catalogue and configuration models
from .tier import (
    TierDefinition,
    BillingConfig,
    SchedulerConfig,
    StoreConfig,
    ServiceConfig,
)

# Subscription models
from .subscription import (
    SubscriptionState,
    SubscribeCode,
    ConfirmationOutcome,
    SubscriptionRecord,
)

# Billing models
from .invoice import (
    InvoiceStatus,
    Invoice,
    Bill,
    BillNotification,
)

# API models
from .api_request import (
    PurchaseResponse,
    StatusResponse,
    NotificationResponse,
    ErrorResponse,
)

__all__ = [
    # Configuration
    "TierDefinition",
    "BillingConfig",
    "SchedulerConfig",
    "StoreConfig",
    "ServiceConfig",
    # Subscription
    "SubscriptionState",
    "SubscribeCode",
    "ConfirmationOutcome",
    "SubscriptionRecord",
    # Billing
    "InvoiceStatus",
    "Invoice",
    "Bill",
    "BillNotification",
    # API
    "PurchaseResponse",
    "StatusResponse",
    "NotificationResponse",
    "ErrorResponse",
]
