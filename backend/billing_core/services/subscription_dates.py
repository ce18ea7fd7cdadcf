"""Billing period arithmetic for subscription renewals."""

import calendar as cal
from datetime import UTC, datetime, timedelta

from billing_core.models.subscription import BillingInterval


def add_interval(dt: datetime, interval: str, count: int = 1) -> datetime:
    """Add ``count`` billing intervals to a datetime.

    Month and year arithmetic clamps to the last day of the target month,
    so Jan 31 + 1 month is Feb 28 (or 29).
    """
    if interval == BillingInterval.DAY.value:
        return dt + timedelta(days=count)
    elif interval == BillingInterval.WEEK.value:
        return dt + timedelta(weeks=count)
    elif interval == BillingInterval.MONTH.value:
        return _add_months(dt, count)
    elif interval == BillingInterval.YEAR.value:
        return _add_months(dt, 12 * count)
    raise ValueError(f"Unknown interval: {interval}")


def subtract_interval(dt: datetime, interval: str, count: int = 1) -> datetime:
    """Subtract ``count`` billing intervals from a datetime."""
    return add_interval(dt, interval, -count)


def _add_months(dt: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping to last day of month."""
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(dt.day, max_day)
    return dt.replace(year=year, month=month, day=day)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def next_period(start: datetime, interval: str, count: int = 1) -> tuple[datetime, datetime]:
    """Return the billing period of ``count`` intervals starting at ``start``."""
    return start, add_interval(start, interval, count)
