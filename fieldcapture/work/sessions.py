"""
Pure functions over a job's session list.

Nothing here touches storage. Callers replace the returned session in the
job's list and recompute the cached total with total_duration().
"""

from __future__ import annotations

import math
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional

from ..core.clock import Clock
from ..core.errors import ValidationError
from ..core.models import TimeSession

MIN_DURATION_MIN = 1


def duration_minutes(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes between two instants, rounded up, never below one."""
    seconds = (ended_at - started_at).total_seconds()
    return max(MIN_DURATION_MIN, math.ceil(seconds / 60))


def start_session(clock: Clock) -> TimeSession:
    return TimeSession(id=str(uuid.uuid4()), started_at=clock.now())


def end_session(session: TimeSession, clock: Clock) -> TimeSession:
    """Return a closed copy of ``session`` ending now."""
    ended_at = clock.now()
    if ended_at < session.started_at:
        # Clock went backwards; close at start so the 1-minute floor applies.
        ended_at = session.started_at
    return replace(
        session,
        ended_at=ended_at,
        duration_min=duration_minutes(session.started_at, ended_at),
    )


def edit_session(
    session: TimeSession,
    *,
    started_at: Optional[datetime] = None,
    ended_at: Optional[datetime] = None,
) -> TimeSession:
    """Manual correction of a closed session's bounds.

    Raises ValidationError if the end is at or before the start.
    """
    new_start = started_at or session.started_at
    new_end = ended_at or session.ended_at
    if new_end is None:
        raise ValidationError("Cannot edit the bounds of a running session")
    if new_end <= new_start:
        raise ValidationError("Session end must be after its start")
    return replace(
        session,
        started_at=new_start,
        ended_at=new_end,
        duration_min=duration_minutes(new_start, new_end),
    )


def total_duration(sessions: Iterable[TimeSession]) -> int:
    """Sum of closed sessions' minutes; open sessions contribute nothing."""
    return sum(s.duration_min for s in sessions if s.duration_min is not None)


def replace_session(sessions: List[TimeSession], updated: TimeSession) -> List[TimeSession]:
    return [updated if s.id == updated.id else s for s in sessions]


def live_elapsed_seconds(session: TimeSession, clock: Clock) -> int:
    """Seconds since an open session started (display only)."""
    if not session.is_open:
        return 0
    return max(0, int((clock.now() - session.started_at).total_seconds()))


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


def format_duration_long(minutes: int) -> str:
    hours, mins = divmod(minutes, 60)
    if hours == 0:
        return f"{mins} minute{'s' if mins != 1 else ''}"
    if mins == 0:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{hours}h {mins}m"
