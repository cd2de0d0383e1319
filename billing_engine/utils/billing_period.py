"""Billing period parsing and date arithmetic.

Parses ISO 8601 duration strings used in plan definitions and applies them
to datetimes. Months and years are calendar-based: adding P1M to Jan 31
lands on the last day of February.
"""

import calendar
import re
from datetime import datetime, timedelta
from typing import NamedTuple

_PERIOD_PATTERN = re.compile(r"^(\d+)?([DWMY])$")


class BillingPeriod(NamedTuple):
    """Parsed ISO 8601 duration: a count and a unit (D, W, M or Y)."""

    count: int
    unit: str


def parse_billing_period(period: str) -> BillingPeriod:
    """Parse an ISO 8601 duration string.

    Supports P[n]D, P[n]W, P[n]M and P[n]Y, where [n] defaults to 1.

    Args:
        period: ISO 8601 duration string (e.g., "P1M", "P1Y", "P7D")

    Returns:
        BillingPeriod(count, unit)

    Raises:
        ValueError: If the period string is invalid or unsupported

    Examples:
        >>> parse_billing_period("P1M")
        BillingPeriod(count=1, unit='M')

        >>> parse_billing_period("P14D")
        BillingPeriod(count=14, unit='D')
    """
    if not period or not isinstance(period, str):
        raise ValueError("Period must be a non-empty string")

    period = period.strip().upper()

    if not period.startswith("P"):
        raise ValueError(f"Invalid period format: '{period}'. Must start with 'P'")

    duration_str = period[1:]
    if not duration_str:
        raise ValueError(f"Invalid period format: '{period}'. No duration specified")

    match = _PERIOD_PATTERN.match(duration_str)
    if not match:
        raise ValueError(
            f"Unsupported period format: '{period}'. "
            "Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y"
        )

    number_str, unit = match.groups()
    number = int(number_str) if number_str else 1
    if number <= 0:
        raise ValueError(f"Period number must be positive, got: {number}")

    return BillingPeriod(number, unit)


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_billing_period(start: datetime, period: str) -> datetime:
    """Return ``start`` advanced by one billing period.

    Args:
        start: Period start
        period: ISO 8601 duration string

    Returns:
        End of the period

    Examples:
        >>> add_billing_period(datetime(2026, 1, 31), "P1M")
        datetime.datetime(2026, 2, 28, 0, 0)
    """
    count, unit = parse_billing_period(period)

    if unit == "D":
        return start + timedelta(days=count)
    if unit == "W":
        return start + timedelta(weeks=count)
    if unit == "M":
        return add_months(start, count)
    return add_months(start, 12 * count)


def billing_period_to_timedelta(period: str) -> timedelta:
    """Convert a day- or week-based duration to a timedelta.

    Grace periods are always expressed in days or weeks; month and year
    durations have no fixed length and are rejected here.

    Raises:
        ValueError: For month or year durations
    """
    count, unit = parse_billing_period(period)
    if unit == "D":
        return timedelta(days=count)
    if unit == "W":
        return timedelta(weeks=count)
    raise ValueError(f"Period '{period}' has no fixed length; use add_billing_period")


def validate_billing_period(period: str) -> bool:
    """Validate that a string is a supported billing period."""
    try:
        parse_billing_period(period)
        return True
    except (ValueError, TypeError):
        return False
