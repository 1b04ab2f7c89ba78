"""Tests for fieldcapture.work.sessions — session math and formatting."""

from datetime import timedelta

import pytest

from fieldcapture.core.clock import ManualClock
from fieldcapture.core.errors import ValidationError
from fieldcapture.core.models import TimeSession
from fieldcapture.work import sessions as ts


@pytest.fixture
def clock():
    return ManualClock()


def _closed(clock, minutes, seconds=0):
    s = ts.start_session(clock)
    clock.advance(minutes=minutes, seconds=seconds)
    return ts.end_session(s, clock)


# ── Start / end ───────────────────────────────────────────────────────────────


class TestStartEnd:
    def test_start_is_open(self, clock):
        s = ts.start_session(clock)
        assert s.is_open
        assert s.started_at == clock.now()
        assert s.duration_min is None

    def test_immediate_stop_is_one_minute(self, clock):
        s = ts.end_session(ts.start_session(clock), clock)
        assert s.duration_min == 1

    def test_ninety_seconds_rounds_up(self, clock):
        assert _closed(clock, 1, 30).duration_min == 2

    def test_exact_minutes(self, clock):
        assert _closed(clock, 45).duration_min == 45

    def test_end_returns_copy(self, clock):
        s = ts.start_session(clock)
        clock.advance(minutes=3)
        closed = ts.end_session(s, clock)
        assert s.is_open
        assert closed.id == s.id
        assert closed.ended_at == clock.now()

    def test_backwards_clock_still_one_minute(self, clock):
        s = ts.start_session(clock)
        clock.advance(minutes=-5)
        closed = ts.end_session(s, clock)
        assert closed.duration_min == 1
        assert closed.ended_at == s.started_at


class TestTotals:
    def test_open_sessions_contribute_nothing(self, clock):
        done = _closed(clock, 10)
        running = ts.start_session(clock)
        assert ts.total_duration([done, running]) == 10

    def test_order_independent(self, clock):
        a, b, c = _closed(clock, 5), _closed(clock, 0, 20), _closed(clock, 61)
        assert ts.total_duration([a, b, c]) == ts.total_duration([c, a, b]) == 67

    def test_empty(self):
        assert ts.total_duration([]) == 0

    def test_live_elapsed(self, clock):
        s = ts.start_session(clock)
        clock.advance(seconds=42)
        assert ts.live_elapsed_seconds(s, clock) == 42
        assert ts.live_elapsed_seconds(ts.end_session(s, clock), clock) == 0


# ── Manual edits ──────────────────────────────────────────────────────────────


class TestEditSession:
    def test_edit_recomputes_duration(self, clock):
        s = _closed(clock, 5)
        edited = ts.edit_session(s, ended_at=s.started_at + timedelta(minutes=30))
        assert edited.duration_min == 30

    def test_short_edit_hits_floor(self, clock):
        s = _closed(clock, 5)
        edited = ts.edit_session(s, ended_at=s.started_at + timedelta(seconds=10))
        assert edited.duration_min == 1

    def test_end_before_start_rejected(self, clock):
        s = _closed(clock, 5)
        with pytest.raises(ValidationError):
            ts.edit_session(s, ended_at=s.started_at - timedelta(minutes=1))

    def test_end_equal_start_rejected(self, clock):
        s = _closed(clock, 5)
        with pytest.raises(ValidationError):
            ts.edit_session(s, ended_at=s.started_at)

    def test_running_session_rejected(self, clock):
        with pytest.raises(ValidationError):
            ts.edit_session(ts.start_session(clock), started_at=clock.now())

    def test_replace_session_keeps_order(self, clock):
        a, b = _closed(clock, 1), _closed(clock, 2)
        updated = TimeSession(id=a.id, started_at=a.started_at, ended_at=a.ended_at, duration_min=9)
        assert [s.duration_min for s in ts.replace_session([a, b], updated)] == [9, 2]


class TestFormatting:
    @pytest.mark.parametrize("minutes,expected", [
        (45, "45m"),
        (60, "1h"),
        (90, "1h 30m"),
        (120, "2h"),
    ])
    def test_short(self, minutes, expected):
        assert ts.format_duration(minutes) == expected

    @pytest.mark.parametrize("minutes,expected", [
        (1, "1 minute"),
        (5, "5 minutes"),
        (60, "1 hour"),
        (120, "2 hours"),
        (65, "1h 5m"),
    ])
    def test_long(self, minutes, expected):
        assert ts.format_duration_long(minutes) == expected
