"""Utility functions and helpers."""

from subscription_core.utils.duration import (
    duration_to_timedelta,
    format_duration,
    parse_duration,
    validate_duration,
)
from subscription_core.utils.invoice_id import (
    extract_invoice_timestamp,
    generate_invoice_id,
    validate_invoice_id,
)

__all__ = [
    # Durations
    "parse_duration",
    "duration_to_timedelta",
    "format_duration",
    "validate_duration",
    # Invoice ids
    "generate_invoice_id",
    "validate_invoice_id",
    "extract_invoice_timestamp",
]
