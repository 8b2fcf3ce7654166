"""Tests for invoice id generation."""

import time

from subscription_core.utils.invoice_id import (
    extract_invoice_timestamp,
    generate_invoice_id,
    validate_invoice_id,
)


def test_generated_ids_are_valid_and_unique():
    ids = {generate_invoice_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(validate_invoice_id(invoice_id) for invoice_id in ids)


def test_prefix_is_used():
    invoice_id = generate_invoice_id(prefix="renew")
    assert invoice_id.startswith("renew_")
    assert validate_invoice_id(invoice_id)


def test_timestamp_is_extracted():
    before = int(time.time() * 1000)
    invoice_id = generate_invoice_id()
    after = int(time.time() * 1000)

    timestamp = extract_invoice_timestamp(invoice_id)
    assert before <= timestamp <= after


def test_invalid_ids():
    assert not validate_invoice_id("")
    assert not validate_invoice_id(None)
    assert not validate_invoice_id("sub_short_1700000000000")
    assert not validate_invoice_id("sub a1b2c3d4e5f6a7b8 1700000000000")
    assert extract_invoice_timestamp("garbage") is None
