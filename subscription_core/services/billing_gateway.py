"""Billing gateway adapter for the QIWI P2P bills API.

Responsibilities:
- Open an invoice (bill) for a tier and return the provider pay link
- Look up the status of an open invoice (used by the payment poller)
- Verify the signature of inbound bill notifications

The adapter keeps no state of its own and never retries: provider failures are
surfaced to the caller as GatewayUnavailableError.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import ValidationError

from subscription_core.logging_config import get_logger
from subscription_core.models import BillingConfig, Invoice, InvoiceStatus
from subscription_core.models.invoice import Bill
from subscription_core.repositories.tier_repository import TierRepository
from subscription_core.services.time_controller import TimeController
from subscription_core.utils.invoice_id import generate_invoice_id

logger = get_logger(__name__)

BILLS_PATH = "/partner/bill/v1/bills/{bill_id}"
SIGNATURE_HEADER = "X-Api-Signature-SHA256"


class BillingError(Exception):
    """Base exception for billing gateway errors."""

    pass


class GatewayUnavailableError(BillingError):
    """Raised when the billing provider cannot be reached or rejects the call."""

    pass


def format_amount(amount_micros: int) -> str:
    """Format a micros amount the way the provider expects ("199.00")."""
    value = Decimal(amount_micros) / Decimal(1_000_000)
    return str(value.quantize(Decimal("0.01")))


def format_expiration(millis: int) -> str:
    """Format an instant as ISO 8601 with offset, second precision."""
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat(timespec="seconds")


class QiwiBillingGateway:
    """Client for the P2P bills API.

    Args:
        settings: billing section of the service configuration
        tier_repository: tier catalogue used to price invoices
        transport: optional httpx transport (tests use httpx.MockTransport)
        time_controller: service clock for default invoice lifetimes
    """

    def __init__(
            self,
            settings: BillingConfig,
            tier_repository: TierRepository,
            transport: Optional[httpx.BaseTransport] = None,
            time_controller: Optional[TimeController] = None,
    ) -> None:
        self._settings = settings
        self._tiers = tier_repository
        self._clock = time_controller or TimeController()
        self._client = httpx.Client(
            base_url=settings.api_url,
            timeout=settings.request_timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {settings.secret_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )

    def create_invoice(
            self,
            user_id: str,
            tier_id: str,
            expires_at_millis: Optional[int] = None,
            renewal: bool = False,
    ) -> Invoice:
        """Open an invoice for a tier.

        Args:
            user_id: Paying user (must be non-empty)
            tier_id: Tier from the catalogue
            expires_at_millis: When the unpaid invoice lapses (defaults to now
                plus the configured invoice lifetime, in service time)
            renewal: Whether the invoice renews an active subscription

        Returns:
            Invoice with the provider pay link

        Raises:
            ValueError: If user_id is empty
            UnknownTierError: If tier_id is not configured
            GatewayUnavailableError: If the provider call fails
        """
        if not user_id:
            raise ValueError("user_id must be a non-empty string")
        tier = self._tiers.get_by_id(tier_id)

        if expires_at_millis is None:
            expires_at_millis = self._clock.get_current_time_millis() + self._settings.invoice_lifetime_millis

        invoice_id = generate_invoice_id(prefix=self._settings.invoice_prefix)
        body = {
            "amount": {"currency": tier.currency, "value": format_amount(tier.price_micros)},
            "comment": tier.title,
            "expirationDateTime": format_expiration(expires_at_millis),
            "customer": {"account": user_id},
            "customFields": {"tier": tier.id},
        }

        bill = self._request("PUT", invoice_id, json=body)
        if not bill.payUrl:
            raise GatewayUnavailableError(f"Provider returned no payUrl for bill {invoice_id}")

        invoice = Invoice(
            invoice_id=invoice_id,
            user_id=user_id,
            tier_id=tier.id,
            amount_micros=tier.price_micros,
            currency=tier.currency,
            pay_url=bill.payUrl,
            status=bill.status.value,
            expiration_time_millis=expires_at_millis,
            renewal=renewal,
        )

        logger.info(
            "invoice_created",
            invoice_id=invoice_id,
            user_id=user_id,
            tier_id=tier.id,
            amount=body["amount"]["value"],
            currency=tier.currency,
            renewal=renewal,
        )
        return invoice

    def get_invoice_status(self, invoice_id: str) -> InvoiceStatus:
        """Look up the provider status of an invoice.

        Raises:
            GatewayUnavailableError: If the provider call fails
        """
        bill = self._request("GET", invoice_id)
        logger.debug("invoice_status_fetched", invoice_id=invoice_id, status=bill.status.value.value)
        return bill.status.value

    def verify_notification_signature(self, bill: Bill, signature: Optional[str]) -> bool:
        """Check the HMAC-SHA256 signature of a bill notification.

        The signed string is amount.currency|amount.value|billId|siteId|status.
        """
        if not signature or not self._settings.secret_key:
            return False

        message = "|".join(
            [
                bill.amount.currency,
                bill.amount.value,
                bill.billId,
                bill.siteId,
                bill.status.value.value,
            ]
        )
        expected = hmac.new(
            self._settings.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def _request(self, method: str, invoice_id: str, json: Optional[dict] = None) -> Bill:
        path = BILLS_PATH.format(bill_id=invoice_id)
        try:
            response = self._client.request(method, path, json=json)
            response.raise_for_status()
            return Bill.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            logger.error(
                "billing_provider_rejected_request",
                method=method,
                invoice_id=invoice_id,
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise GatewayUnavailableError(
                f"Billing provider returned {e.response.status_code} for bill {invoice_id}"
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "billing_provider_unreachable",
                method=method,
                invoice_id=invoice_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GatewayUnavailableError(f"Billing provider unreachable: {e}") from e
        except (ValueError, ValidationError) as e:
            logger.error("billing_provider_bad_response", method=method, invoice_id=invoice_id, error=str(e))
            raise GatewayUnavailableError(f"Unexpected billing provider response: {e}") from e

    def close(self) -> None:
        self._client.close()
