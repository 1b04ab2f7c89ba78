"""
Remote row format ⇄ local entities, plus change-feed event parsing.

Remote job row:
    id, user_id, client_ref, client_name, notes, priority, location,
    completed, completed_at, sessions[{id, started_at, ended_at, duration_min}],
    total_duration_min, created_at, updated_at (server clock), synced_at
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.clock import from_iso, to_iso
from ..core.models import (
    DEFAULT_PRIORITY,
    LOCATION_ONSITE,
    LOCATIONS,
    PRIORITY_LABELS,
    Client,
    Job,
    TimeSession,
)
from ..work.sessions import MIN_DURATION_MIN, duration_minutes, total_duration

logger = logging.getLogger(__name__)

JOBS = "jobs"
CLIENTS = "clients"
TABLES = (JOBS, CLIENTS)

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"
EVENT_TYPES = (EVENT_INSERT, EVENT_UPDATE, EVENT_DELETE)


@dataclass(frozen=True)
class ChangeEvent:
    event_type: str
    table: str
    row: Dict[str, Any]

    @property
    def entity_id(self) -> str:
        return str(self.row["id"])


def parse_change_event(message: Dict[str, Any]) -> ChangeEvent:
    """Validate a change-feed message. Raises ValueError when malformed."""
    event_type = str(message.get("event_type") or message.get("eventType") or "").lower()
    table = str(message.get("table") or "")
    row = message.get("row")
    if row is None and event_type == EVENT_DELETE:
        row = message.get("old")
    if row is None:
        row = message.get("new")

    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type!r}")
    if table not in TABLES:
        raise ValueError(f"Unknown table: {table!r}")
    if not isinstance(row, dict) or not row.get("id"):
        raise ValueError("Change event without a row id")
    return ChangeEvent(event_type=event_type, table=table, row=row)


# ── Jobs ──────────────────────────────────────────────────────────────────────


def _session_to_wire(s: TimeSession) -> Dict[str, Any]:
    return {
        "id": s.id,
        "started_at": to_iso(s.started_at),
        "ended_at": to_iso(s.ended_at),
        "duration_min": s.duration_min,
    }


def _sessions_from_wire(row: Dict[str, Any]) -> List[TimeSession]:
    raw = row.get("sessions")
    if raw is None and row.get("started_at"):
        # Rows written before multi-session jobs carried a single interval.
        raw = [
            {
                "id": str(uuid.uuid4()),
                "started_at": row["started_at"],
                "ended_at": row.get("ended_at"),
                "duration_min": row.get("duration_min"),
            }
        ]
    sessions = []
    for item in raw or []:
        started_at = from_iso(item["started_at"])
        ended_at = from_iso(item.get("ended_at"))
        duration = None
        if ended_at is not None:
            # Closed sessions always carry at least one minute.
            duration = item.get("duration_min")
            if duration is None:
                duration = duration_minutes(started_at, ended_at)
            else:
                duration = max(MIN_DURATION_MIN, int(duration))
        sessions.append(
            TimeSession(
                id=item.get("id") or str(uuid.uuid4()),
                started_at=started_at,
                ended_at=ended_at,
                duration_min=duration,
            )
        )
    return sessions


def job_to_row(job: Job, user_id: str, now: datetime) -> Dict[str, Any]:
    return {
        "id": job.id,
        "user_id": user_id,
        "client_ref": job.client_ref,
        "client_name": job.client_name,
        "notes": job.notes,
        "priority": job.priority,
        "location": job.location,
        "completed": job.completed,
        "completed_at": to_iso(job.completed_at),
        "sessions": [_session_to_wire(s) for s in job.sessions],
        "total_duration_min": job.total_duration_min,
        "created_at": to_iso(job.created_at),
        "synced_at": to_iso(now),
    }


def row_to_job(row: Dict[str, Any]) -> Job:
    """Build a clean (non-dirty) local job from a remote row."""
    priority = row.get("priority") or DEFAULT_PRIORITY
    if priority not in PRIORITY_LABELS:
        logger.warning(f"Job {row['id']}: priority {priority!r} out of range")
        priority = DEFAULT_PRIORITY
    location = row.get("location") or LOCATION_ONSITE
    if location not in LOCATIONS:
        location = LOCATION_ONSITE

    sessions = _sessions_from_wire(row)
    return Job(
        id=str(row["id"]),
        client_ref=row.get("client_ref") or "",
        client_name=row.get("client_name") or "",
        created_at=from_iso(row.get("created_at")) or from_iso(row["updated_at"]),
        sessions=sessions,
        total_duration_min=total_duration(sessions),
        notes=row.get("notes") or "",
        priority=priority,
        completed=bool(row.get("completed")),
        completed_at=from_iso(row.get("completed_at")),
        location=location,
        dirty=False,
        synced_at=from_iso(row["updated_at"]),
    )


# ── Clients ───────────────────────────────────────────────────────────────────


def client_to_row(client: Client, user_id: str) -> Dict[str, Any]:
    return {
        "id": client.id,
        "user_id": user_id,
        "ref": client.ref,
        "name": client.name,
        "tier": client.tier,
        "created_at": to_iso(client.created_at),
    }


def row_to_client(row: Dict[str, Any], last_used_at: Optional[datetime] = None) -> Client:
    return Client(
        id=str(row["id"]),
        ref=str(row["ref"]).strip().upper(),
        name=row.get("name") or "",
        tier=row.get("tier"),
        created_at=from_iso(row.get("created_at")),
        last_used_at=last_used_at,
        dirty=False,
        synced_at=from_iso(row["updated_at"]),
    )


def row_updated_at(row: Dict[str, Any]) -> Optional[datetime]:
    return from_iso(row.get("updated_at"))
