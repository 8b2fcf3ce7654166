"""Subscription state models.

A user has at most one subscription record. Absence of a record is the
NONE state; PENDING holds an open invoice; ACTIVE holds an expiry instant.
"""

from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionState(IntEnum):
    """Per-user subscription state."""

    NONE = 0  # No subscription, nothing outstanding
    PENDING = 1  # Invoice created, waiting for payment
    ACTIVE = 2  # Paid, valid until expiry


class SubscribeCode(IntEnum):
    """Numeric subscription flag reported to sign-in/profile consumers."""

    SUBSCRIBED = 1
    NOT_SUBSCRIBED = 2


class ConfirmationOutcome(str, Enum):
    """Result of a payment confirmation."""

    ACTIVATED = "activated"
    ALREADY_APPLIED = "already_applied"
    STALE = "stale"


class SubscriptionRecord(BaseModel):
    """Stored subscription state for a single user."""

    user_id: str = Field(..., description="User identity (owned by the auth subsystem)")
    state: SubscriptionState = Field(default=SubscriptionState.NONE, description="Current state")

    # Active subscription
    tier_id: Optional[str] = Field(None, description="Tier of the active subscription")
    invoice_id: Optional[str] = Field(None, description="Invoice that produced the active state")
    expiry_time_millis: Optional[int] = Field(None, description="Expiry instant (Unix millis)")
    activated_time_millis: Optional[int] = Field(None, description="Last activation instant (Unix millis)")
    renewal_count: int = Field(default=0, description="Number of paid renewals")

    # Open invoice (first purchase when PENDING, renewal when ACTIVE)
    pending_invoice_id: Optional[str] = Field(None, description="Open invoice id")
    pending_tier_id: Optional[str] = Field(None, description="Tier of the open invoice")
    pending_expiry_time_millis: Optional[int] = Field(None, description="When the open invoice lapses")

    # Scheduler handles outstanding for this user
    job_ids: set[str] = Field(default_factory=set, description="Outstanding scheduler job ids")

    @property
    def is_active(self) -> bool:
        return self.state == SubscriptionState.ACTIVE

    @property
    def has_pending_invoice(self) -> bool:
        return self.pending_invoice_id is not None

    def set_state(self, new_state: SubscriptionState, reason: Optional[str] = None) -> None:
        """Change subscription state and log the transition.

        Args:
            new_state: New state to transition to
            reason: Reason for state change
        """
        from subscription_core.state_logger import log_subscription_state_change

        old_state = self.state
        if old_state != new_state:
            self.state = new_state
            log_subscription_state_change(
                user_id=self.user_id,
                old_state=old_state.name,
                new_state=new_state.name,
                reason=reason,
                tier_id=self.tier_id or self.pending_tier_id,
            )

    def set_expiry(self, new_expiry_millis: int, reason: str) -> None:
        """Set subscription expiry and log the change.

        Args:
            new_expiry_millis: New expiry time in milliseconds
            reason: Reason for the change (activation, renewal)
        """
        from subscription_core.state_logger import log_expiry_change

        old_expiry = self.expiry_time_millis
        self.expiry_time_millis = new_expiry_millis
        log_expiry_change(
            user_id=self.user_id,
            old_expiry_millis=old_expiry,
            new_expiry_millis=new_expiry_millis,
            reason=reason,
            tier_id=self.tier_id,
            renewal_count=self.renewal_count,
        )

    def clear_pending(self) -> None:
        self.pending_invoice_id = None
        self.pending_tier_id = None
        self.pending_expiry_time_millis = None

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "alice",
                "state": SubscriptionState.ACTIVE,
                "tier_id": "1_month",
                "invoice_id": "sub_a1b2c3d4e5f6a7b8_1700000000000",
                "expiry_time_millis": 1702592000000,
                "activated_time_millis": 1700000000000,
                "renewal_count": 0,
                "job_ids": ["alice:subscription_expiry:9f2c..."],
            }
        }
