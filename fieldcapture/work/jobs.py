"""
Job commands — validate, write to the local store, then notify.

A storage failure raises before any notification goes out, so listeners
never see state that was not persisted.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.clock import Clock
from ..core.db import LocalStore
from ..core.errors import ValidationError
from ..core.models import (
    DEFAULT_PRIORITY,
    LOCATION_ONSITE,
    LOCATIONS,
    PRIORITY_LABELS,
    Job,
    Photo,
    VoiceNote,
)
from ..sync.events import EventBus, JobsUpdated
from . import sessions as ts

logger = logging.getLogger(__name__)


def _validate_priority(priority: int) -> int:
    if priority not in PRIORITY_LABELS:
        raise ValidationError(f"Priority must be 1-5, got {priority!r}")
    return priority


def _validate_location(location: str) -> str:
    if location not in LOCATIONS:
        raise ValidationError(f"Location must be one of {', '.join(LOCATIONS)}")
    return location


class JobService:
    def __init__(
        self,
        store: LocalStore,
        *,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.clock = clock or store.clock
        self.bus = bus or EventBus()

    # ── Queries ───────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise ValidationError(f"Job not found: {job_id}")
        return job

    def list_jobs(self) -> List[Job]:
        return self.store.list_jobs()

    def get_with_media(self, job_id: str) -> Dict[str, Any]:
        job = self.get_job(job_id)
        return {
            "job": job,
            "photos": self.store.photos_for_job(job_id),
            "voice_notes": self.store.voice_notes_for_job(job_id),
        }

    # ── Commands ──────────────────────────────────────────────────────────

    def create_job(
        self,
        client_ref: str,
        *,
        notes: str = "",
        priority: int = DEFAULT_PRIORITY,
        location: str = LOCATION_ONSITE,
    ) -> Job:
        client = self.store.get_client_by_ref(client_ref)
        if client is None:
            raise ValidationError(f"Unknown client reference: {client_ref}")
        now = self.clock.now()
        job = Job(
            id=str(uuid.uuid4()),
            client_ref=client.ref,
            client_name=client.name,
            created_at=now,
            notes=notes,
            priority=_validate_priority(priority),
            location=_validate_location(location),
        )
        self.store.put_job(job)

        client.last_used_at = now
        self.store.put_client(client)

        self._notify(job.id)
        return job

    def update_job(
        self,
        job_id: str,
        *,
        notes: Optional[str] = None,
        priority: Optional[int] = None,
        location: Optional[str] = None,
    ) -> Job:
        job = self.get_job(job_id)
        if priority is not None:
            job.priority = _validate_priority(priority)
        if location is not None:
            job.location = _validate_location(location)
        if notes is not None:
            job.notes = notes
        return self._save(job)

    def set_completed(self, job_id: str, completed: bool = True) -> Job:
        job = self.get_job(job_id)
        if completed == job.completed:
            return job
        if completed:
            self._close_open_session(job)
            job.completed_at = self.clock.now()
        else:
            job.completed_at = None
        job.completed = completed
        return self._save(job)

    def toggle_completed(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        return self.set_completed(job_id, not job.completed)

    def start_timer(self, job_id: str) -> Job:
        """Open a session on ``job_id``, closing any running one elsewhere first."""
        job = self.get_job(job_id)
        if job.completed:
            raise ValidationError("Cannot start a timer on a completed job")
        if job.open_session is not None:
            return job

        touched = []
        for other in self.store.list_jobs():
            if other.id != job_id and other.open_session is not None:
                self._close_open_session(other)
                other.dirty = True
                self.store.put_job(other)
                touched.append(other.id)
                logger.info(f"Stopped running timer on job {other.id}")

        job.sessions.append(ts.start_session(self.clock))
        job.dirty = True
        self.store.put_job(job)
        self._notify(*touched, job.id)
        return job

    def stop_timer(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job.open_session is None:
            raise ValidationError("No running timer on this job")
        self._close_open_session(job)
        return self._save(job)

    def edit_session(
        self,
        job_id: str,
        session_id: str,
        *,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> Job:
        job = self.get_job(job_id)
        match = [s for s in job.sessions if s.id == session_id]
        if not match:
            raise ValidationError(f"Session not found: {session_id}")
        edited = ts.edit_session(match[0], started_at=started_at, ended_at=ended_at)
        job.sessions = ts.replace_session(job.sessions, edited)
        job.total_duration_min = ts.total_duration(job.sessions)
        return self._save(job)

    def delete_job(self, job_id: str) -> None:
        """Drop attachments, then tombstone the job until the remote confirms."""
        self.get_job(job_id)
        self.store.delete_job(job_id)
        self._notify(job_id)

    # ── Attachments (local only) ──────────────────────────────────────────

    def add_photo(self, job_id: str, data: str, caption: str = "") -> Photo:
        self.get_job(job_id)
        photo = Photo(
            id=str(uuid.uuid4()),
            job_id=job_id,
            data=data,
            caption=caption,
            created_at=self.clock.now(),
        )
        self.store.add_photo(photo)
        return photo

    def add_voice_note(
        self,
        job_id: str,
        audio: str,
        *,
        duration_sec: float = 0.0,
        transcript: Optional[str] = None,
    ) -> VoiceNote:
        self.get_job(job_id)
        note = VoiceNote(
            id=str(uuid.uuid4()),
            job_id=job_id,
            audio=audio,
            duration_sec=duration_sec,
            transcript=transcript,
            created_at=self.clock.now(),
        )
        self.store.put_voice_note(note)
        return note

    # ── Internals ─────────────────────────────────────────────────────────

    def _close_open_session(self, job: Job) -> None:
        running = job.open_session
        if running is None:
            return
        job.sessions = ts.replace_session(job.sessions, ts.end_session(running, self.clock))
        job.total_duration_min = ts.total_duration(job.sessions)

    def _save(self, job: Job) -> Job:
        job.dirty = True
        self.store.put_job(job)
        self._notify(job.id)
        return job

    def _notify(self, *job_ids: str) -> None:
        self.bus.emit(JobsUpdated(job_ids=tuple(job_ids)))
