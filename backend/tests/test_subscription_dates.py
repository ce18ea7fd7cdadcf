"""Tests for billing period arithmetic."""

from datetime import UTC, datetime

import pytest

from billing_core.services.subscription_dates import (
    add_interval,
    ensure_utc,
    next_period,
    subtract_interval,
)


class TestAddInterval:
    def test_day(self):
        start = datetime(2024, 1, 30, 9, 0, tzinfo=UTC)
        assert add_interval(start, "day") == datetime(2024, 1, 31, 9, 0, tzinfo=UTC)
        assert add_interval(start, "day", 3) == datetime(2024, 2, 2, 9, 0, tzinfo=UTC)

    def test_week(self):
        start = datetime(2024, 2, 26, tzinfo=UTC)
        assert add_interval(start, "week", 2) == datetime(2024, 3, 11, tzinfo=UTC)

    def test_month(self):
        start = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
        assert add_interval(start, "month") == datetime(2024, 4, 15, 12, 0, tzinfo=UTC)

    def test_month_clamps_to_end_of_month(self):
        start = datetime(2024, 1, 31, tzinfo=UTC)
        assert add_interval(start, "month") == datetime(2024, 2, 29, tzinfo=UTC)
        assert add_interval(datetime(2023, 1, 31, tzinfo=UTC), "month") == datetime(
            2023, 2, 28, tzinfo=UTC
        )

    def test_month_rolls_over_year(self):
        start = datetime(2024, 11, 30, tzinfo=UTC)
        assert add_interval(start, "month", 3) == datetime(2025, 2, 28, tzinfo=UTC)

    def test_year(self):
        assert add_interval(datetime(2024, 2, 29, tzinfo=UTC), "year") == datetime(
            2025, 2, 28, tzinfo=UTC
        )

    def test_unknown_interval_raises(self):
        with pytest.raises(ValueError, match="Unknown interval: fortnight"):
            add_interval(datetime(2024, 1, 1, tzinfo=UTC), "fortnight")


class TestHelpers:
    def test_subtract_interval(self):
        end = datetime(2024, 3, 31, tzinfo=UTC)
        assert subtract_interval(end, "month") == datetime(2024, 2, 29, tzinfo=UTC)

    def test_ensure_utc_attaches_timezone_to_naive_datetimes(self):
        naive = datetime(2024, 3, 15, 12, 0)
        assert ensure_utc(naive) == datetime(2024, 3, 15, 12, 0, tzinfo=UTC)

    def test_ensure_utc_keeps_aware_datetimes_and_none(self):
        aware = datetime(2024, 3, 15, tzinfo=UTC)
        assert ensure_utc(aware) is aware
        assert ensure_utc(None) is None

    def test_next_period(self):
        start = datetime(2024, 3, 15, tzinfo=UTC)
        assert next_period(start, "week") == (start, datetime(2024, 3, 22, tzinfo=UTC))
