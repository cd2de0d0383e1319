"""Tests for the clock abstraction."""

from datetime import datetime, timedelta, timezone

import pytest

from billing_engine.services.clock import (
    ManualClock,
    SystemClock,
    get_clock,
    reset_clock,
    set_clock,
)

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestManualClock:
    def test_time_is_frozen(self):
        clock = ManualClock(START)
        assert clock.now() == START
        assert clock.now() == START

    def test_advance(self):
        clock = ManualClock(START)
        result = clock.advance(days=1, hours=2, minutes=3, seconds=4)
        assert result["old_time"] == START
        assert clock.now() == START + timedelta(days=1, hours=2, minutes=3, seconds=4)

    def test_advance_backwards_rejected(self):
        clock = ManualClock(START)
        with pytest.raises(ValueError, match="backwards"):
            clock.advance(days=-1)

    def test_set_time(self):
        clock = ManualClock(START)
        later = START + timedelta(days=30)
        clock.set_time(later)
        assert clock.now() == later

    def test_set_time_backwards_rejected(self):
        clock = ManualClock(START)
        with pytest.raises(ValueError, match="backwards"):
            clock.set_time(START - timedelta(seconds=1))

    def test_naive_datetime_treated_as_utc(self):
        clock = ManualClock(datetime(2026, 1, 1))
        assert clock.now() == START
        assert clock.now().tzinfo is not None

    def test_now_millis(self):
        assert ManualClock(START).now_millis() == 1767225600000


class TestGlobalClock:
    def test_conftest_installs_manual_clock(self, clock):
        assert get_clock() is clock

    def test_reset_falls_back_to_system_clock(self):
        reset_clock()
        assert isinstance(get_clock(), SystemClock)
        assert get_clock().now().tzinfo is not None

    def test_set_clock(self):
        manual = ManualClock(START)
        set_clock(manual)
        assert get_clock() is manual
