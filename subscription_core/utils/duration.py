"""Tier duration parsing utilities.

Parses the ISO 8601 duration strings used for subscription tiers and invoice
lifetimes and converts them to milliseconds for time calculations.
"""

import re
from datetime import timedelta

# Milliseconds in common time units
MILLIS_PER_SECOND = 1000
MILLIS_PER_MINUTE = 60 * MILLIS_PER_SECOND
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR
MILLIS_PER_WEEK = 7 * MILLIS_PER_DAY
MILLIS_PER_MONTH = 30 * MILLIS_PER_DAY  # Standard approximation for billing
MILLIS_PER_YEAR = 365 * MILLIS_PER_DAY  # Standard approximation for billing

_DATE_UNITS = {
    "D": MILLIS_PER_DAY,
    "W": MILLIS_PER_WEEK,
    "M": MILLIS_PER_MONTH,
    "Y": MILLIS_PER_YEAR,
}

_TIME_UNITS = {
    "H": MILLIS_PER_HOUR,
    "M": MILLIS_PER_MINUTE,
    "S": MILLIS_PER_SECOND,
}


def parse_duration(period: str) -> int:
    """Parse ISO 8601 duration string to milliseconds.

    Supported formats:
    - P[n]D, P[n]W, P[n]M, P[n]Y - calendar-ish periods (month = 30 days,
      year = 365 days)
    - PT[n]H, PT[n]M, PT[n]S - hours, minutes, seconds

    A missing number defaults to 1 ("PM" == "P1M").

    Args:
        period: ISO 8601 duration string (e.g., "P1M", "P1Y", "PT30M")

    Returns:
        Duration in milliseconds

    Raises:
        ValueError: If the period string is invalid or unsupported

    Examples:
        >>> parse_duration("P1M")
        2592000000

        >>> parse_duration("PT1H")
        3600000
    """
    if not period or not isinstance(period, str):
        raise ValueError("Period must be a non-empty string")

    period = period.strip().upper()

    if not period.startswith("P"):
        raise ValueError(f"Invalid period format: '{period}'. Must start with 'P'")

    duration_str = period[1:]

    if not duration_str:
        raise ValueError(f"Invalid period format: '{period}'. No duration specified")

    if duration_str.startswith("T"):
        units = _TIME_UNITS
        match = re.match(r"^T(\d+)?([HMS])$", duration_str)
    else:
        units = _DATE_UNITS
        match = re.match(r"^(\d+)?([DWMY])$", duration_str)

    if not match:
        raise ValueError(
            f"Unsupported period format: '{period}'. "
            "Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y, PT[n]H, PT[n]M, PT[n]S"
        )

    number_str, unit = match.groups()
    number = int(number_str) if number_str else 1

    if number <= 0:
        raise ValueError(f"Period number must be positive, got: {number}")

    return number * units[unit]


def duration_to_timedelta(period: str) -> timedelta:
    """Convert ISO 8601 duration string to Python timedelta."""
    return timedelta(milliseconds=parse_duration(period))


def format_duration(millis: int) -> str:
    """Convert milliseconds back to an ISO 8601 duration string.

    Uses the largest unit that divides the value exactly, falling back to
    seconds for sub-day durations.

    Raises:
        ValueError: If milliseconds is negative

    Examples:
        >>> format_duration(2592000000)
        'P1M'

        >>> format_duration(90000)
        'PT90S'
    """
    if millis < 0:
        raise ValueError("Milliseconds must be non-negative")

    if millis == 0:
        return "P0D"

    for unit, size in (("Y", MILLIS_PER_YEAR), ("M", MILLIS_PER_MONTH), ("W", MILLIS_PER_WEEK), ("D", MILLIS_PER_DAY)):
        if millis % size == 0:
            return f"P{millis // size}{unit}"

    for unit, size in (("H", MILLIS_PER_HOUR), ("M", MILLIS_PER_MINUTE)):
        if millis % size == 0:
            return f"PT{millis // size}{unit}"

    return f"PT{millis // MILLIS_PER_SECOND}S"


def validate_duration(period: str) -> bool:
    """Check that a string is a supported duration."""
    try:
        parse_duration(period)
        return True
    except (ValueError, TypeError):
        return False
