"""Unit tests for SubscriptionService - purchase, confirmation, renewal and revocation."""

from threading import Thread
from unittest.mock import patch

import pytest

from subscription_core.models import ConfirmationOutcome, SubscribeCode, SubscriptionState
from subscription_core.repositories.subscription_store import (
    AlreadyPendingError,
    AlreadySubscribedError,
    NotSubscribedError,
    StoreUnavailableError,
    SubscriptionStore,
)
from subscription_core.repositories.tier_repository import UnknownTierError
from subscription_core.services.billing_gateway import GatewayUnavailableError
from subscription_core.services.expiration_scheduler import JobKind
from subscription_core.services.subscription_service import SubscriptionService
from subscription_core.utils.duration import MILLIS_PER_HOUR, MILLIS_PER_MONTH


def buy_and_confirm(service, user_id="alice", tier_id="1_month"):
    invoice = service.purchase(user_id, tier_id)
    outcome = service.confirm_payment(user_id, invoice.invoice_id, tier_id)
    assert outcome == ConfirmationOutcome.ACTIVATED
    return invoice


class TestPurchase:
    def test_purchase_opens_invoice(self, service, gateway, clock):
        invoice = service.purchase("alice", "1_month")

        assert gateway.create_calls == 1
        assert invoice.pay_url
        record = service.status("alice")
        assert record.state == SubscriptionState.PENDING
        assert record.pending_invoice_id == invoice.invoice_id
        assert record.pending_tier_id == "1_month"

    def test_purchase_schedules_invoice_expiry(self, service, clock):
        before = clock.get_current_time_millis()
        invoice = service.purchase("alice", "1_month")

        jobs = service.outstanding_jobs("alice")
        assert [job.kind for job in jobs] == [JobKind.INVOICE_EXPIRY]
        assert jobs[0].run_at_millis == invoice.expiration_time_millis
        assert invoice.expiration_time_millis >= before + MILLIS_PER_HOUR
        assert service.status("alice").job_ids == {jobs[0].job_id}

    def test_active_user_rejected_without_gateway_call(self, service, gateway):
        buy_and_confirm(service)

        with pytest.raises(AlreadySubscribedError):
            service.purchase("alice", "3_months")

        assert gateway.create_calls == 1

    def test_pending_user_rejected_without_gateway_call(self, service, gateway):
        service.purchase("alice", "1_month")

        with pytest.raises(AlreadyPendingError):
            service.purchase("alice", "1_month")

        assert gateway.create_calls == 1

    def test_unknown_tier(self, service, gateway):
        with pytest.raises(UnknownTierError):
            service.purchase("alice", "lifetime")
        assert gateway.create_calls == 0

    def test_gateway_failure_leaves_state_unchanged(self, service, gateway):
        gateway.fail = True

        with pytest.raises(GatewayUnavailableError):
            service.purchase("alice", "1_month")

        assert service.status("alice").state == SubscriptionState.NONE
        assert service.outstanding_jobs("alice") == []

    def test_store_failure_after_invoice_is_propagated(self, service, store, gateway):
        with patch.object(store, "set_pending", side_effect=StoreUnavailableError("disk full")):
            with pytest.raises(StoreUnavailableError):
                service.purchase("alice", "1_month")

        assert gateway.create_calls == 1
        assert service.status("alice").state == SubscriptionState.NONE
        assert service.outstanding_jobs("alice") == []

    def test_concurrent_purchases_create_one_invoice(self, service, gateway):
        results = []

        def attempt():
            try:
                service.purchase("alice", "1_month")
                results.append("ok")
            except AlreadyPendingError:
                results.append("pending")

        threads = [Thread(target=attempt) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count("ok") == 1
        assert gateway.create_calls == 1


class TestConfirmPayment:
    def test_activation(self, service, clock):
        invoice = service.purchase("alice", "1_month")
        before = clock.get_current_time_millis()

        outcome = service.confirm_payment("alice", invoice.invoice_id, "1_month")

        after = clock.get_current_time_millis()
        record = service.status("alice")
        assert outcome == ConfirmationOutcome.ACTIVATED
        assert record.state == SubscriptionState.ACTIVE
        assert record.tier_id == "1_month"
        assert record.invoice_id == invoice.invoice_id
        assert before + MILLIS_PER_MONTH <= record.expiry_time_millis <= after + MILLIS_PER_MONTH
        assert record.pending_invoice_id is None

    def test_activation_replaces_invoice_job_with_expiry_job(self, service):
        invoice = service.purchase("alice", "1_month")
        service.confirm_payment("alice", invoice.invoice_id, "1_month")

        jobs = service.outstanding_jobs("alice")
        assert [job.kind for job in jobs] == [JobKind.SUBSCRIPTION_EXPIRY]
        assert jobs[0].run_at_millis == service.status("alice").expiry_time_millis
        assert service.status("alice").job_ids == {jobs[0].job_id}

    def test_duplicate_confirmation_is_noop(self, service):
        invoice = buy_and_confirm(service)
        record = service.status("alice")
        jobs = service.outstanding_jobs("alice")

        outcome = service.confirm_payment("alice", invoice.invoice_id, "1_month")

        assert outcome == ConfirmationOutcome.ALREADY_APPLIED
        assert service.status("alice").expiry_time_millis == record.expiry_time_millis
        assert service.outstanding_jobs("alice") == jobs

    def test_concurrent_duplicate_confirmations_leave_one_job(self, service):
        invoice = service.purchase("alice", "1_month")
        outcomes = []

        def confirm():
            outcomes.append(service.confirm_payment("alice", invoice.invoice_id, "1_month"))

        threads = [Thread(target=confirm) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(ConfirmationOutcome.ACTIVATED) == 1
        assert outcomes.count(ConfirmationOutcome.ALREADY_APPLIED) == 7
        assert len(service.outstanding_jobs("alice", kind=JobKind.SUBSCRIPTION_EXPIRY)) == 1

    def test_unknown_invoice_is_stale(self, service):
        service.purchase("alice", "1_month")

        outcome = service.confirm_payment("alice", "sub_0000000000000000_1700000000000", "1_month")

        assert outcome == ConfirmationOutcome.STALE
        assert service.status("alice").state == SubscriptionState.PENDING

    def test_tier_mismatch_is_stale(self, service):
        invoice = service.purchase("alice", "1_month")

        outcome = service.confirm_payment("alice", invoice.invoice_id, "3_months")

        assert outcome == ConfirmationOutcome.STALE
        assert service.status("alice").state == SubscriptionState.PENDING

    def test_confirmation_for_none_user_is_stale(self, service):
        outcome = service.confirm_payment("alice", "sub_0000000000000000_1700000000000", "1_month")
        assert outcome == ConfirmationOutcome.STALE
        assert service.status("alice").state == SubscriptionState.NONE

    def test_store_failure_restores_jobs(self, service, store):
        invoice = service.purchase("alice", "1_month")

        with patch.object(store, "activate", side_effect=StoreUnavailableError("disk full")):
            with pytest.raises(StoreUnavailableError):
                service.confirm_payment("alice", invoice.invoice_id, "1_month")

        assert service.status("alice").state == SubscriptionState.PENDING
        jobs = service.outstanding_jobs("alice")
        assert [job.kind for job in jobs] == [JobKind.INVOICE_EXPIRY]


class TestRenewal:
    def test_renew_requires_active(self, service, gateway):
        with pytest.raises(NotSubscribedError):
            service.renew("alice", "1_month")
        assert gateway.create_calls == 0

    def test_renew_keeps_subscription_active(self, service, gateway):
        buy_and_confirm(service)
        expiry = service.status("alice").expiry_time_millis

        invoice = service.renew("alice", "3_months")

        record = service.status("alice")
        assert invoice.renewal is True
        assert record.state == SubscriptionState.ACTIVE
        assert record.expiry_time_millis == expiry
        assert record.pending_invoice_id == invoice.invoice_id
        kinds = sorted(job.kind.value for job in service.outstanding_jobs("alice"))
        assert kinds == [JobKind.INVOICE_EXPIRY.value, JobKind.SUBSCRIPTION_EXPIRY.value]

    def test_second_renewal_invoice_rejected(self, service, gateway):
        buy_and_confirm(service)
        service.renew("alice", "1_month")

        with pytest.raises(AlreadyPendingError):
            service.renew("alice", "1_month")
        assert gateway.create_calls == 2

    def test_paid_renewal_replaces_expiry(self, service, clock):
        buy_and_confirm(service)
        first = service.status("alice")
        invoice = service.renew("alice", "3_months")
        clock.advance_time(minutes=30)

        outcome = service.confirm_payment("alice", invoice.invoice_id, "3_months")

        record = service.status("alice")
        assert outcome == ConfirmationOutcome.ACTIVATED
        assert record.tier_id == "3_months"
        assert record.renewal_count == 1
        assert record.expiry_time_millis > first.expiry_time_millis
        jobs = service.outstanding_jobs("alice")
        assert len(jobs) == 1
        assert jobs[0].run_at_millis == record.expiry_time_millis

    def test_old_invoice_is_stale_after_renewal(self, service):
        first_invoice = buy_and_confirm(service)
        renewal = service.renew("alice", "1_month")
        service.confirm_payment("alice", renewal.invoice_id, "1_month")

        assert service.confirm_payment("alice", first_invoice.invoice_id, "1_month") == ConfirmationOutcome.STALE


class TestRevocation:
    def test_revoke_clears_matching_expiry(self, service):
        buy_and_confirm(service)
        expiry = service.status("alice").expiry_time_millis

        service._revoke("alice", expiry)

        assert service.status("alice").state == SubscriptionState.NONE
        assert service.outstanding_jobs("alice") == []

    def test_revoke_with_stale_expiry_is_noop(self, service):
        buy_and_confirm(service)
        expiry = service.status("alice").expiry_time_millis

        service._revoke("alice", expiry - 1)

        assert service.status("alice").state == SubscriptionState.ACTIVE

    def test_revoke_keeps_open_renewal_invoice(self, service):
        buy_and_confirm(service)
        expiry = service.status("alice").expiry_time_millis
        renewal = service.renew("alice", "3_months")

        service._revoke("alice", expiry)

        record = service.status("alice")
        assert record.state == SubscriptionState.PENDING
        assert record.pending_invoice_id == renewal.invoice_id
        assert service.subscribe_code("alice") == SubscribeCode.NOT_SUBSCRIBED
        jobs = service.outstanding_jobs("alice")
        assert [job.kind for job in jobs] == [JobKind.INVOICE_EXPIRY]
        assert jobs[0].run_at_millis == renewal.expiration_time_millis

    def test_revoke_for_none_user_is_noop(self, service):
        service._revoke("alice", 1)
        assert service.status("alice").state == SubscriptionState.NONE

    def test_revoke_never_raises(self, service, store):
        buy_and_confirm(service)
        expiry = service.status("alice").expiry_time_millis

        with patch.object(store, "end_period", side_effect=StoreUnavailableError("disk full")):
            service._revoke("alice", expiry)

        assert service.status("alice").state == SubscriptionState.ACTIVE

    def test_expiry_fires_after_fast_forward(self, service, clock, wait_for):
        buy_and_confirm(service)

        clock.advance_time(days=31)

        assert wait_for(lambda: service.status("alice").state == SubscriptionState.NONE)
        assert service.outstanding_jobs("alice") == []


class TestInvoiceExpiry:
    def test_expire_invoice_returns_user_to_none(self, service):
        invoice = service.purchase("alice", "1_month")

        assert service.expire_invoice("alice", invoice.invoice_id) is True
        assert service.status("alice").state == SubscriptionState.NONE

    def test_expire_other_invoice_is_noop(self, service):
        service.purchase("alice", "1_month")
        assert service.expire_invoice("alice", "sub_0000000000000000_1700000000000") is False
        assert service.status("alice").state == SubscriptionState.PENDING

    def test_unpaid_invoice_lapses_after_fast_forward(self, service, clock, gateway, wait_for):
        service.purchase("alice", "1_month")

        clock.advance_time(hours=2)

        assert wait_for(lambda: service.status("alice").state == SubscriptionState.NONE)
        service.purchase("alice", "1_month")
        assert gateway.create_calls == 2

    def test_lapsed_renewal_invoice_keeps_subscription(self, service, clock, wait_for):
        buy_and_confirm(service)
        service.renew("alice", "1_month")

        clock.advance_time(hours=2)

        assert wait_for(lambda: service.status("alice").pending_invoice_id is None)
        assert service.status("alice").state == SubscriptionState.ACTIVE
        assert [job.kind for job in service.outstanding_jobs("alice")] == [JobKind.SUBSCRIPTION_EXPIRY]


class TestStatus:
    def test_subscribe_code(self, service):
        assert service.subscribe_code("alice") == SubscribeCode.NOT_SUBSCRIBED
        service.purchase("alice", "1_month")
        assert service.subscribe_code("alice") == SubscribeCode.NOT_SUBSCRIBED
        service.confirm_payment("alice", service.status("alice").pending_invoice_id, "1_month")
        assert service.subscribe_code("alice") == SubscribeCode.SUBSCRIBED


class TestRestoreSchedules:
    def test_restore_recreates_jobs(self, service, store, scheduler, clock):
        now = clock.get_current_time_millis()
        store.activate("alice", "1_month", "inv-a", now + MILLIS_PER_MONTH, now)
        store.set_pending("bob", "inv-b", "1_month", now + MILLIS_PER_HOUR)

        assert service.restore_schedules() == 2

        assert [job.run_at_millis for job in service.outstanding_jobs("alice")] == [now + MILLIS_PER_MONTH]
        assert [job.kind for job in service.outstanding_jobs("bob")] == [JobKind.INVOICE_EXPIRY]

    def test_restore_fires_overdue_expiry(self, service, store, clock, wait_for):
        now = clock.get_current_time_millis()
        store.activate("alice", "1_month", "inv-a", now - 1000, now - MILLIS_PER_MONTH)

        service.restore_schedules()

        assert wait_for(lambda: service.status("alice").state == SubscriptionState.NONE)

    def test_restore_is_repeatable(self, service, store, clock):
        now = clock.get_current_time_millis()
        store.activate("alice", "1_month", "inv-a", now + MILLIS_PER_MONTH, now)

        service.restore_schedules()
        service.restore_schedules()

        assert len(service.outstanding_jobs("alice")) == 1


class TestSnapshotBackedStore:
    """A snapshot write is only made for state changes, never for job bookkeeping."""

    @pytest.fixture
    def snapshot_store(self, tmp_path):
        return SubscriptionStore(snapshot_path=tmp_path / "state.json")

    @pytest.fixture
    def snapshot_service(self, snapshot_store, gateway, scheduler, tier_repository, clock):
        return SubscriptionService(
            store=snapshot_store,
            gateway=gateway,
            scheduler=scheduler,
            tier_repository=tier_repository,
            time_controller=clock,
            invoice_lifetime_millis=MILLIS_PER_HOUR,
        )

    @staticmethod
    def fail_after(store, writes):
        """Let the first `writes` snapshot writes through, then fail every one."""
        real_write = store._write_snapshot
        calls = []

        def write(records):
            calls.append(records)
            if len(calls) > writes:
                raise StoreUnavailableError("disk full")
            real_write(records)

        return patch.object(store, "_write_snapshot", side_effect=write)

    def test_purchase_succeeds_once_pending_state_is_written(self, snapshot_service, snapshot_store):
        with self.fail_after(snapshot_store, writes=1):
            invoice = snapshot_service.purchase("alice", "1_month")

        record = snapshot_service.status("alice")
        assert record.state == SubscriptionState.PENDING
        assert record.pending_invoice_id == invoice.invoice_id
        jobs = snapshot_service.outstanding_jobs("alice")
        assert [job.kind for job in jobs] == [JobKind.INVOICE_EXPIRY]
        assert record.job_ids == {jobs[0].job_id}

    def test_renew_succeeds_once_renewal_is_written(self, snapshot_service, snapshot_store):
        buy_and_confirm(snapshot_service)

        with self.fail_after(snapshot_store, writes=1):
            renewal = snapshot_service.renew("alice", "3_months")

        assert snapshot_service.status("alice").pending_invoice_id == renewal.invoice_id
        assert len(snapshot_service.outstanding_jobs("alice", kind=JobKind.INVOICE_EXPIRY)) == 1

    def test_confirm_payment_writes_once(self, snapshot_service, snapshot_store):
        invoice = snapshot_service.purchase("alice", "1_month")

        with patch.object(snapshot_store, "_write_snapshot", wraps=snapshot_store._write_snapshot) as write:
            snapshot_service.confirm_payment("alice", invoice.invoice_id, "1_month")

        assert write.call_count == 1
