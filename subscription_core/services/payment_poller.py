"""Payment poller - confirms payments by asking the provider.

Complements the webhook: every tick looks up the status of each outstanding
invoice and feeds the result to the subscription service. Enabled when
billing.poll_interval_seconds is greater than zero.
"""

from typing import Dict

from subscription_core.logging_config import get_logger
from subscription_core.models import ConfirmationOutcome, InvoiceStatus
from subscription_core.repositories.subscription_store import StoreUnavailableError, SubscriptionStore
from subscription_core.services.billing_gateway import GatewayUnavailableError, QiwiBillingGateway
from subscription_core.services.expiration_scheduler import ExpirationScheduler
from subscription_core.services.subscription_service import SubscriptionService

logger = get_logger(__name__)

POLLER_JOB_ID = "payment-poller"


class PaymentPoller:
    """Periodic invoice status lookup."""

    def __init__(
            self,
            service: SubscriptionService,
            gateway: QiwiBillingGateway,
            store: SubscriptionStore,
            scheduler: ExpirationScheduler,
            interval_seconds: int = 0,
    ):
        self.service = service
        self.gateway = gateway
        self.store = store
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self._started = False

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    def start(self) -> None:
        if not self.enabled:
            logger.info("payment_poller_disabled")
            return
        self.scheduler.add_recurring(POLLER_JOB_ID, self.poll_once, self.interval_seconds)
        self._started = True

    def stop(self) -> None:
        if self._started:
            self.scheduler.remove_recurring(POLLER_JOB_ID)
            self._started = False
            logger.info("payment_poller_stopped")

    def poll_once(self) -> Dict[str, int]:
        """Check every outstanding invoice once.

        Gateway and store failures are logged; the invoice is looked at again
        on the next tick.

        Returns:
            Counts of checked, activated, dropped and failed invoices
        """
        counts = {"checked": 0, "activated": 0, "dropped": 0, "failed": 0}

        for record in self.store.get_with_pending_invoice():
            invoice_id = record.pending_invoice_id
            tier_id = record.pending_tier_id
            counts["checked"] += 1

            try:
                status = self.gateway.get_invoice_status(invoice_id)
            except GatewayUnavailableError as e:
                counts["failed"] += 1
                logger.warning(
                    "invoice_poll_failed",
                    user_id=record.user_id,
                    invoice_id=invoice_id,
                    error=str(e),
                )
                continue

            try:
                if status == InvoiceStatus.PAID:
                    outcome = self.service.confirm_payment(record.user_id, invoice_id, tier_id)
                    if outcome == ConfirmationOutcome.ACTIVATED:
                        counts["activated"] += 1
                elif status in (InvoiceStatus.REJECTED, InvoiceStatus.EXPIRED):
                    if self.service.expire_invoice(record.user_id, invoice_id):
                        counts["dropped"] += 1
            except StoreUnavailableError as e:
                counts["failed"] += 1
                logger.error(
                    "invoice_poll_apply_failed",
                    user_id=record.user_id,
                    invoice_id=invoice_id,
                    status=status.value,
                    error=str(e),
                )

        if counts["checked"]:
            logger.info("payment_poll_completed", **counts)
        return counts
