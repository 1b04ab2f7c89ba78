"""Data models for FieldCapture."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

PRIORITY_LABELS = {
    1: "P1 - Critical",
    2: "P2 - High",
    3: "P3 - Medium",
    4: "P4 - Normal",
    5: "P5 - Low",
}
DEFAULT_PRIORITY = 5

LOCATION_ONSITE = "OnSite"
LOCATION_REMOTE = "Remote"
LOCATIONS = (LOCATION_ONSITE, LOCATION_REMOTE)


@dataclass
class TimeSession:
    id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_min: Optional[int] = None  # None while open

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


@dataclass
class Job:
    id: str
    client_ref: str
    client_name: str  # denormalized for offline display
    created_at: datetime
    sessions: List[TimeSession] = field(default_factory=list)
    total_duration_min: int = 0  # closed sessions only
    notes: str = ""
    priority: int = DEFAULT_PRIORITY
    completed: bool = False
    completed_at: Optional[datetime] = None
    location: str = LOCATION_ONSITE
    dirty: bool = True
    synced_at: Optional[datetime] = None          # last confirmed sync (server clock)
    deleted_at: Optional[datetime] = None         # tombstone, pending remote delete
    revision: int = 0                             # bumped by every local store write

    @property
    def open_session(self) -> Optional[TimeSession]:
        for s in self.sessions:
            if s.is_open:
                return s
        return None

    @property
    def priority_label(self) -> str:
        return PRIORITY_LABELS.get(self.priority, PRIORITY_LABELS[DEFAULT_PRIORITY])


@dataclass
class Client:
    id: str
    ref: str  # uppercased natural key
    name: str
    tier: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    dirty: bool = True
    synced_at: Optional[datetime] = None
    revision: int = 0


@dataclass
class Photo:
    id: str
    job_id: str
    data: str  # encoded payload (data URL / base64)
    caption: str = ""
    created_at: Optional[datetime] = None


@dataclass
class VoiceNote:
    id: str
    job_id: str
    audio: str  # encoded payload
    duration_sec: float = 0.0
    transcript: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PendingChange:
    entity_id: str
    kind: str       # "job" | "client"
    op: str         # "upsert" | "delete"
    queued_at: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
