"""
Quick-entry parsing: pull a priority and a due date out of free text.

    "fix boiler P2 tomorrow"  -> priority 2, due tomorrow
    "next fri quote"          -> due the coming Friday
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

_PRIORITY_RE = re.compile(r"\bP([1-5])\b", re.IGNORECASE)
_NEXT_DAY_RE = re.compile(r"\bnext\s+(mon|tue|wed|thu|fri|sat|sun)")

# date.weekday(): Monday == 0
_WEEKDAYS = {"mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6}


@dataclass
class HotText:
    text: str
    priority: Optional[int] = None
    due: Optional[date] = None


def _days_until(today: date, weekday: int) -> int:
    # Strictly in the future: "next mon" on a Monday is a week away.
    return (weekday - today.weekday() + 7) % 7 or 7


def parse_hot_text(text: str, today: Optional[date] = None) -> HotText:
    today = today or date.today()
    result = HotText(text=text)

    if m := _PRIORITY_RE.search(text):
        result.priority = int(m.group(1))

    lower = text.lower()
    if re.search(r"\btod(ay)?\b", lower):
        result.due = today
    elif re.search(r"\btom(orrow)?\b", lower):
        result.due = today + timedelta(days=1)
    elif "next week" in lower:
        result.due = today + timedelta(days=_days_until(today, _WEEKDAYS["tue"]))
    elif m := _NEXT_DAY_RE.search(lower):
        result.due = today + timedelta(days=_days_until(today, _WEEKDAYS[m.group(1)]))

    return result
