"""Subscription lifecycle orchestration.

Responsibilities:
- Decide whether a user may buy (or renew) and open the invoice
- Activate a subscription once payment is confirmed, at-least-once safe
- Keep exactly one live expiration job per active subscription
- Revoke access when the expiry instant passes, exactly once
- Drop invoices that lapse unpaid

All reads and writes for one user happen under that user's store lock.
"""

from typing import Optional

from subscription_core.logging_config import get_logger
from subscription_core.models import ConfirmationOutcome, Invoice, SubscribeCode, SubscriptionRecord
from subscription_core.repositories.subscription_store import (
    AlreadyPendingError,
    AlreadySubscribedError,
    NotSubscribedError,
    StoreUnavailableError,
    SubscriptionError,
    SubscriptionStore,
)
from subscription_core.repositories.tier_repository import TierRepository
from subscription_core.services.billing_gateway import QiwiBillingGateway
from subscription_core.services.expiration_scheduler import ExpirationScheduler, JobKind
from subscription_core.services.time_controller import TimeController

logger = get_logger(__name__)


class SubscriptionService:
    """Subscription lifecycle engine.

    Composes the store, the billing gateway and the expiration scheduler.
    Errors from the gateway and the store are passed to the caller unchanged;
    nothing is retried here.
    """

    def __init__(
            self,
            store: SubscriptionStore,
            gateway: QiwiBillingGateway,
            scheduler: ExpirationScheduler,
            tier_repository: TierRepository,
            time_controller: TimeController,
            invoice_lifetime_millis: int,
    ):
        self.store = store
        self.gateway = gateway
        self.scheduler = scheduler
        self.tiers = tier_repository
        self.clock = time_controller
        self.invoice_lifetime_millis = invoice_lifetime_millis

        logger.info("subscription_service_initialized", tiers=self.tiers.get_all_ids())

    # Purchasing

    def purchase(self, user_id: str, tier_id: str) -> Invoice:
        """Open an invoice for a first subscription.

        Args:
            user_id: Resolved user identity
            tier_id: Tier to buy

        Returns:
            Invoice with the pay link

        Raises:
            UnknownTierError: If tier_id is not configured
            AlreadySubscribedError: If the user is ACTIVE (no invoice created)
            AlreadyPendingError: If an invoice is already outstanding
            GatewayUnavailableError: If the provider call fails
            StoreUnavailableError: If the pending state cannot be stored
        """
        tier = self.tiers.get_by_id(tier_id)

        with self.store.user_lock(user_id):
            current = self.store.get(user_id)
            if current.is_active:
                logger.info("purchase_rejected", user_id=user_id, tier_id=tier_id, reason="already_subscribed")
                raise AlreadySubscribedError(f"User {user_id} already has an active subscription")
            if current.has_pending_invoice:
                logger.info("purchase_rejected", user_id=user_id, tier_id=tier_id, reason="already_pending")
                raise AlreadyPendingError(
                    f"User {user_id} already has an outstanding invoice {current.pending_invoice_id}"
                )

            expires_at = self.clock.get_current_time_millis() + self.invoice_lifetime_millis
            invoice = self.gateway.create_invoice(user_id, tier.id, expires_at_millis=expires_at)

            try:
                self.store.set_pending(user_id, invoice.invoice_id, tier.id, expires_at)
            except (SubscriptionError, StoreUnavailableError) as e:
                # The provider-side invoice lapses on its own
                logger.warning(
                    "invoice_orphaned",
                    user_id=user_id,
                    invoice_id=invoice.invoice_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            self._schedule_invoice_expiry(user_id, invoice.invoice_id, expires_at)

        logger.info(
            "purchase_started",
            user_id=user_id,
            tier_id=tier.id,
            invoice_id=invoice.invoice_id,
        )
        return invoice

    def renew(self, user_id: str, tier_id: str) -> Invoice:
        """Open a renewal invoice for an ACTIVE user.

        The subscription stays ACTIVE until the renewal is paid; the paid
        renewal replaces the expiry through confirm_payment().

        Raises:
            UnknownTierError: If tier_id is not configured
            NotSubscribedError: If the user is not ACTIVE
            AlreadyPendingError: If a renewal invoice is already outstanding
            GatewayUnavailableError: If the provider call fails
            StoreUnavailableError: If the invoice cannot be stored
        """
        tier = self.tiers.get_by_id(tier_id)

        with self.store.user_lock(user_id):
            current = self.store.get(user_id)
            if not current.is_active:
                raise NotSubscribedError(f"User {user_id} has no active subscription to renew")
            if current.has_pending_invoice:
                raise AlreadyPendingError(
                    f"User {user_id} already has an outstanding invoice {current.pending_invoice_id}"
                )

            expires_at = self.clock.get_current_time_millis() + self.invoice_lifetime_millis
            invoice = self.gateway.create_invoice(user_id, tier.id, expires_at_millis=expires_at, renewal=True)

            try:
                self.store.set_pending_renewal(user_id, invoice.invoice_id, tier.id, expires_at)
            except (SubscriptionError, StoreUnavailableError) as e:
                logger.warning(
                    "invoice_orphaned",
                    user_id=user_id,
                    invoice_id=invoice.invoice_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            self._schedule_invoice_expiry(user_id, invoice.invoice_id, expires_at)

        logger.info("renewal_started", user_id=user_id, tier_id=tier.id, invoice_id=invoice.invoice_id)
        return invoice

    # Confirmation

    def confirm_payment(self, user_id: str, invoice_id: str, tier_id: str) -> ConfirmationOutcome:
        """Activate the subscription paid by an invoice.

        Safe to call more than once for the same invoice: repeated calls find
        the ACTIVE state already reflecting the invoice and change nothing.

        Sequence: cancel every outstanding job of the user, store the new
        expiry, schedule the revocation for it.

        Returns:
            ACTIVATED, ALREADY_APPLIED, or STALE when the invoice/tier does not
            match the outstanding invoice

        Raises:
            StoreUnavailableError: If the activation cannot be stored
        """
        with self.store.user_lock(user_id):
            current = self.store.get(user_id)

            if current.is_active and current.invoice_id == invoice_id:
                logger.info("payment_already_applied", user_id=user_id, invoice_id=invoice_id)
                return ConfirmationOutcome.ALREADY_APPLIED

            if current.pending_invoice_id != invoice_id or current.pending_tier_id != tier_id:
                logger.warning(
                    "stale_payment_confirmation",
                    user_id=user_id,
                    invoice_id=invoice_id,
                    tier_id=tier_id,
                    pending_invoice_id=current.pending_invoice_id,
                    pending_tier_id=current.pending_tier_id,
                    state=current.state.name,
                )
                return ConfirmationOutcome.STALE

            tier = self.tiers.get_by_id(tier_id)

            self.scheduler.cancel_all(user_id)

            now = self.clock.get_current_time_millis()
            expiry = now + tier.duration_millis
            try:
                record = self.store.activate(user_id, tier.id, invoice_id, expiry, now)
            except StoreUnavailableError:
                # Put back the jobs of the unchanged record
                self._schedule_from_record(current)
                raise

            handle = self.scheduler.schedule(user_id, expiry, self._revoke, user_id, expiry)
            self._sync_job_ids(user_id)

        logger.info(
            "subscription_activated",
            user_id=user_id,
            tier_id=tier.id,
            invoice_id=invoice_id,
            expiry_time_millis=record.expiry_time_millis,
            renewal_count=record.renewal_count,
            job_id=handle.job_id,
        )
        return ConfirmationOutcome.ACTIVATED

    # Scheduled callbacks

    def _revoke(self, user_id: str, expected_expiry_millis: int) -> None:
        """Expiration job: end the subscription if it still ends at the expected instant.

        A renewal that landed after this job was scheduled changes the stored
        expiry, so the stale job leaves the subscription alone. A renewal
        invoice still open at this point survives as a PENDING invoice with its
        own expiry job. Never raises.
        """
        try:
            with self.store.user_lock(user_id):
                current = self.store.get(user_id)
                if not current.is_active or current.expiry_time_millis != expected_expiry_millis:
                    logger.info(
                        "revocation_skipped",
                        user_id=user_id,
                        expected_expiry_millis=expected_expiry_millis,
                        stored_expiry_millis=current.expiry_time_millis,
                        state=current.state.name,
                    )
                    return

                remaining = self.store.end_period(user_id)
                self.scheduler.cancel_all(user_id)
                self._schedule_from_record(remaining)

            logger.info(
                "subscription_revoked",
                user_id=user_id,
                tier_id=current.tier_id,
                expiry_time_millis=expected_expiry_millis,
                pending_invoice_id=remaining.pending_invoice_id,
            )
        except Exception as e:
            logger.error(
                "revocation_failed",
                user_id=user_id,
                expected_expiry_millis=expected_expiry_millis,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    def expire_invoice(self, user_id: str, invoice_id: str) -> bool:
        """Drop an unpaid invoice if it is still the outstanding one.

        Used by the invoice expiry job and by the payment poller when the
        provider reports the bill as rejected or expired.

        Returns:
            True if the invoice was dropped
        """
        with self.store.user_lock(user_id):
            dropped = self.store.clear_pending(user_id, invoice_id)
            if dropped:
                self._sync_job_ids(user_id)

        if dropped:
            logger.info("invoice_expired", user_id=user_id, invoice_id=invoice_id)
        return dropped

    def _expire_invoice_job(self, user_id: str, invoice_id: str) -> None:
        try:
            self.expire_invoice(user_id, invoice_id)
        except Exception as e:
            logger.error(
                "invoice_expiry_failed",
                user_id=user_id,
                invoice_id=invoice_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    # Queries

    def status(self, user_id: str) -> SubscriptionRecord:
        """Get the user's current subscription state (read-through to the store)."""
        return self.store.get(user_id)

    def subscribe_code(self, user_id: str) -> SubscribeCode:
        """Numeric subscription flag as reported at sign-in."""
        if self.store.get(user_id).is_active:
            return SubscribeCode.SUBSCRIBED
        return SubscribeCode.NOT_SUBSCRIBED

    # Start-up

    def restore_schedules(self) -> int:
        """Recreate expiration jobs for every stored record.

        Called once on start-up, after the store has loaded its snapshot.
        Instants already in the past fire immediately.

        Returns:
            Number of jobs scheduled
        """
        scheduled = 0
        for record in self.store.all():
            with self.store.user_lock(record.user_id):
                self.scheduler.cancel_all(record.user_id)
                scheduled += self._schedule_from_record(record)

        logger.info("schedules_restored", users=self.store.count(), jobs=scheduled)
        return scheduled

    # Helpers

    def _schedule_invoice_expiry(self, user_id: str, invoice_id: str, expires_at_millis: int) -> None:
        self.scheduler.schedule(
            user_id,
            expires_at_millis,
            self._expire_invoice_job,
            user_id,
            invoice_id,
            kind=JobKind.INVOICE_EXPIRY,
        )
        self._sync_job_ids(user_id)

    def _schedule_from_record(self, record: SubscriptionRecord) -> int:
        scheduled = 0
        if record.is_active and record.expiry_time_millis is not None:
            self.scheduler.schedule(
                record.user_id,
                record.expiry_time_millis,
                self._revoke,
                record.user_id,
                record.expiry_time_millis,
            )
            scheduled += 1
        if record.pending_invoice_id and record.pending_expiry_time_millis is not None:
            self.scheduler.schedule(
                record.user_id,
                record.pending_expiry_time_millis,
                self._expire_invoice_job,
                record.user_id,
                record.pending_invoice_id,
                kind=JobKind.INVOICE_EXPIRY,
            )
            scheduled += 1
        self._sync_job_ids(record.user_id)
        return scheduled

    def _sync_job_ids(self, user_id: str) -> None:
        self.store.set_job_ids(user_id, self.scheduler.outstanding_ids(user_id))

    def outstanding_jobs(self, user_id: str, kind: Optional[JobKind] = None):
        """Scheduled jobs of a user (for health checks and tests)."""
        return self.scheduler.outstanding(user_id, kind=kind)
