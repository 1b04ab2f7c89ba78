"""Tests for fieldcapture.work.hottext — quick-entry hints."""

from datetime import date

import pytest

from fieldcapture.work.hottext import parse_hot_text

# A Wednesday
TODAY = date(2025, 1, 15)


class TestPriority:
    @pytest.mark.parametrize("text,expected", [
        ("fix boiler P2", 2),
        ("p1 burst pipe", 1),
        ("quote P5 later", 5),
        ("no hint here", None),
        ("P6 is not a priority", None),
        ("APP1 model number", None),
    ])
    def test_priority(self, text, expected):
        assert parse_hot_text(text, TODAY).priority == expected


class TestDueDate:
    def test_today(self):
        assert parse_hot_text("call back today", TODAY).due == TODAY
        assert parse_hot_text("tod", TODAY).due == TODAY

    def test_tomorrow(self):
        assert parse_hot_text("visit tomorrow", TODAY).due == date(2025, 1, 16)
        assert parse_hot_text("tom P3", TODAY).due == date(2025, 1, 16)

    def test_next_week_is_next_tuesday(self):
        assert parse_hot_text("next week", TODAY).due == date(2025, 1, 21)

    def test_next_weekday(self):
        assert parse_hot_text("next fri quote", TODAY).due == date(2025, 1, 17)
        assert parse_hot_text("next mon", TODAY).due == date(2025, 1, 20)

    def test_same_weekday_is_a_week_away(self):
        assert parse_hot_text("next wed", TODAY).due == date(2025, 1, 22)

    def test_no_date(self):
        hint = parse_hot_text("replace tap washer", TODAY)
        assert hint.due is None
        assert hint.text == "replace tap washer"
