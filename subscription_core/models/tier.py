"""Tier catalogue and service configuration models.

Models from config/tiers.yaml.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from subscription_core.utils.duration import parse_duration


class TierDefinition(BaseModel):
    """Purchasable subscription tier: one price, one duration."""

    id: str = Field(..., description="Tier ID used in purchase requests (e.g., 1_month)")
    title: str = Field(..., description="Human-readable title, shown on the invoice")
    price_micros: int = Field(..., gt=0, description="Price in micros (1,000,000 = 1.00)")
    currency: str = Field(default="RUB", description="ISO 4217 currency code")
    duration: str = Field(..., description="ISO 8601 duration (e.g., P1M, P1Y)")

    @field_validator("duration")
    @classmethod
    def _duration_is_parsable(cls, value: str) -> str:
        parse_duration(value)
        return value

    @property
    def duration_millis(self) -> int:
        """Subscription length in milliseconds."""
        return parse_duration(self.duration)

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "id": "1_month",
                "title": "Subscription for 1 month",
                "price_micros": 199000000,
                "currency": "RUB",
                "duration": "P1M",
            }
        }


class BillingConfig(BaseModel):
    """P2P billing provider settings."""

    api_url: str = Field(default="https://api.qiwi.com", description="Provider API base URL")
    secret_key: str = Field(default="", description="Bearer secret key for the P2P API")
    site_id: str = Field(default="", description="Merchant site id (used in webhook signatures)")
    invoice_lifetime: str = Field(default="PT1H", description="How long an unpaid invoice stays open")
    invoice_prefix: str = Field(default="sub", description="Prefix for generated invoice ids")
    request_timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP timeout")
    poll_interval_seconds: int = Field(default=0, ge=0, description="Pending invoice poll interval, 0 disables")

    @field_validator("invoice_lifetime")
    @classmethod
    def _lifetime_is_parsable(cls, value: str) -> str:
        parse_duration(value)
        return value

    @property
    def invoice_lifetime_millis(self) -> int:
        return parse_duration(self.invoice_lifetime)


class SchedulerConfig(BaseModel):
    """Expiration scheduler settings."""

    max_workers: int = Field(default=4, gt=0, description="Worker threads running fired jobs")
    shutdown_wait: bool = Field(default=True, description="Drain running jobs on shutdown")


class StoreConfig(BaseModel):
    """Subscription store settings."""

    snapshot_path: Optional[str] = Field(default=None, description="JSON snapshot file, empty for memory only")


class ServiceConfig(BaseModel):
    """Complete tiers.yaml configuration."""

    tiers: list[TierDefinition] = Field(..., min_length=1, description="Purchasable tiers")
    billing: BillingConfig = Field(default_factory=BillingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @model_validator(mode="after")
    def _tiers_are_distinct(self) -> "ServiceConfig":
        ids = [tier.id for tier in self.tiers]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Tier ids must be unique: {ids}")

        durations = [tier.duration_millis for tier in self.tiers]
        if len(set(durations)) != len(durations):
            raise ValueError("Every tier must have a distinct duration")

        prices = [tier.price_micros for tier in self.tiers]
        if len(set(prices)) != len(prices):
            raise ValueError("Every tier must have a distinct price")
        return self
