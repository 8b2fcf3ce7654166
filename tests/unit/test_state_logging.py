"""Tests for state change logging.

Subscription and job transitions log through state_logger with before/after
values.
"""

from unittest.mock import patch

import pytest

from subscription_core.models import SubscriptionRecord, SubscriptionState
from subscription_core.state_logger import (
    log_expiry_change,
    log_job_state_change,
    log_subscription_state_change,
)


@pytest.fixture
def mock_logger():
    with patch("subscription_core.state_logger.logger") as mock:
        yield mock


class TestStateLoggerHelpers:
    def test_subscription_state_change(self, mock_logger):
        log_subscription_state_change("alice", "PENDING", "ACTIVE", reason="paid", tier_id="1_month")

        mock_logger.info.assert_called_once_with(
            "subscription_state_changed",
            user_id="alice",
            old_state="PENDING",
            new_state="ACTIVE",
            reason="paid",
            tier_id="1_month",
        )

    def test_expiry_change_renders_iso_times(self, mock_logger):
        log_expiry_change("alice", None, 1700000000000, reason="activation")

        kwargs = mock_logger.info.call_args.kwargs
        assert mock_logger.info.call_args.args == ("expiry_changed",)
        assert kwargs["old_expiry"] is None
        assert kwargs["new_expiry"] == "2023-11-14T22:13:20+00:00"
        assert kwargs["reason"] == "activation"

    def test_job_state_change(self, mock_logger):
        log_job_state_change(
            job_id="alice:subscription_expiry:abc",
            user_id="alice",
            kind="subscription_expiry",
            old_state="scheduled",
            new_state="fired",
            run_at_millis=1700000000000,
        )

        kwargs = mock_logger.info.call_args.kwargs
        assert mock_logger.info.call_args.args == ("expiration_job_state_changed",)
        assert kwargs["new_state"] == "fired"
        assert kwargs["run_at"] == "2023-11-14T22:13:20+00:00"


class TestRecordTransitions:
    def test_set_state_logs_transition(self, mock_logger):
        record = SubscriptionRecord(user_id="alice", pending_tier_id="1_month")

        record.set_state(SubscriptionState.PENDING, reason="Invoice created")

        assert record.state == SubscriptionState.PENDING
        kwargs = mock_logger.info.call_args.kwargs
        assert kwargs["old_state"] == "NONE"
        assert kwargs["new_state"] == "PENDING"
        assert kwargs["tier_id"] == "1_month"

    def test_set_same_state_does_not_log(self, mock_logger):
        record = SubscriptionRecord(user_id="alice")
        record.set_state(SubscriptionState.NONE)
        mock_logger.info.assert_not_called()

    def test_set_expiry_logs_old_and_new(self, mock_logger):
        record = SubscriptionRecord(user_id="alice", expiry_time_millis=1700000000000)

        record.set_expiry(1700000001000, reason="renewal")

        assert record.expiry_time_millis == 1700000001000
        kwargs = mock_logger.info.call_args.kwargs
        assert kwargs["old_expiry"] == "2023-11-14T22:13:20+00:00"
        assert kwargs["new_expiry"] == "2023-11-14T22:13:21+00:00"
        assert kwargs["reason"] == "renewal"

    def test_clear_pending(self):
        record = SubscriptionRecord(
            user_id="alice",
            pending_invoice_id="inv-1",
            pending_tier_id="1_month",
            pending_expiry_time_millis=1,
        )
        assert record.has_pending_invoice

        record.clear_pending()

        assert not record.has_pending_invoice
        assert record.pending_tier_id is None
        assert record.pending_expiry_time_millis is None
