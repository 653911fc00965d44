"""Tests for escrow_kernel.domain.clock."""

from datetime import datetime, timedelta, timezone

from escrow_kernel.domain.clock import DeterministicClock, SystemClock, as_utc


class TestDeterministicClock:
    def test_fixed_until_advanced(self):
        start = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
        clock = DeterministicClock(start)
        assert clock.now() == clock.now() == start

        clock.advance_days(2)
        assert clock.now() == start + timedelta(days=2)
        assert clock.tick() == start + timedelta(days=2, seconds=1)

    def test_set_time_resets_offset(self):
        clock = DeterministicClock()
        clock.advance(90)
        target = datetime(2025, 1, 1, tzinfo=timezone.utc)
        clock.set_time(target)
        assert clock.now_utc() == target


class TestSystemClock:
    def test_aware_utc(self):
        assert SystemClock().now().tzinfo is not None


class TestAsUtc:
    def test_naive_is_treated_as_utc(self):
        naive = datetime(2024, 6, 1, 12)
        assert as_utc(naive) == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)

    def test_offset_converted(self):
        plus_two = datetime(2024, 6, 1, 14, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(plus_two) == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
        assert as_utc(plus_two).utcoffset() == timedelta(0)

    def test_none(self):
        assert as_utc(None) is None
