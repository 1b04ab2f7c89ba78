"""Tests for fieldcapture.work.jobs — job commands against a real local store."""

from datetime import timedelta

import pytest

from fieldcapture.core.errors import StorageUnavailable, ValidationError
from fieldcapture.sync.events import JobsUpdated


@pytest.fixture
def job(jobs, clients):
    return jobs.create_job("CLIENT001", notes="Leaking tap")


# ── Create / update ───────────────────────────────────────────────────────────


class TestCreateJob:
    def test_denormalizes_client(self, job):
        assert job.client_ref == "CLIENT001"
        assert job.client_name == "ABC Plumbing"
        assert job.dirty
        assert job.priority == 5
        assert job.location == "OnSite"

    def test_persisted_and_queued(self, job, store):
        assert store.get_job(job.id).notes == "Leaking tap"
        assert [c.entity_id for c in store.pending_changes("job")] == [job.id]

    def test_touches_client(self, job, store, clock):
        assert store.get_client_by_ref("CLIENT001").last_used_at == clock.now()
        assert store.list_clients()[0].ref == "CLIENT001"

    def test_unknown_client(self, jobs, clients):
        with pytest.raises(ValidationError):
            jobs.create_job("NOPE")

    def test_bad_priority(self, jobs, clients):
        with pytest.raises(ValidationError):
            jobs.create_job("CLIENT001", priority=9)

    def test_bad_location(self, jobs, clients):
        with pytest.raises(ValidationError):
            jobs.create_job("CLIENT001", location="Moon")

    def test_notifies(self, jobs, clients, received):
        job = jobs.create_job("CLIENT002")
        assert JobsUpdated(job_ids=(job.id,)) in received

    def test_storage_failure_raises_before_notify(self, jobs, clients, store, received, monkeypatch):
        def broken(_job):
            raise StorageUnavailable("disk full")

        monkeypatch.setattr(store, "put_job", broken)
        received.clear()
        with pytest.raises(StorageUnavailable):
            jobs.create_job("CLIENT001")
        assert not [e for e in received if isinstance(e, JobsUpdated)]


class TestUpdateJob:
    def test_update_fields(self, jobs, job):
        updated = jobs.update_job(job.id, notes="Replaced washer", priority=2, location="Remote")
        assert (updated.notes, updated.priority, updated.location) == ("Replaced washer", 2, "Remote")
        assert updated.priority_label == "P2 - High"

    def test_update_redirties_synced_job(self, jobs, job, store, clock):
        store.mark_job_synced(job.id, clock.now(), store.get_job(job.id).revision)
        assert not store.get_job(job.id).dirty
        jobs.update_job(job.id, notes="x")
        assert store.get_job(job.id).dirty

    def test_unknown_job(self, jobs):
        with pytest.raises(ValidationError):
            jobs.update_job("missing", notes="x")


# ── Timer ─────────────────────────────────────────────────────────────────────


class TestTimer:
    def test_scenario_ninety_seconds(self, jobs, job, clock, store):
        jobs.start_timer(job.id)
        clock.advance(seconds=90)
        jobs.stop_timer(job.id)

        saved = store.get_job(job.id)
        assert saved.sessions[0].duration_min == 2
        assert saved.total_duration_min == 2
        assert saved.dirty

    def test_start_is_idempotent(self, jobs, job):
        jobs.start_timer(job.id)
        again = jobs.start_timer(job.id)
        assert len(again.sessions) == 1

    def test_only_one_timer_across_jobs(self, jobs, job, clock, store):
        other = jobs.create_job("CLIENT002")
        jobs.start_timer(job.id)
        clock.advance(minutes=10)
        jobs.start_timer(other.id)

        first = store.get_job(job.id)
        assert first.open_session is None
        assert first.total_duration_min == 10
        assert store.get_job(other.id).open_session is not None

    def test_stop_without_timer(self, jobs, job):
        with pytest.raises(ValidationError):
            jobs.stop_timer(job.id)

    def test_completed_job_cannot_start(self, jobs, job):
        jobs.set_completed(job.id)
        with pytest.raises(ValidationError):
            jobs.start_timer(job.id)

    def test_completing_closes_running_session(self, jobs, job, clock, store):
        jobs.start_timer(job.id)
        clock.advance(minutes=3)
        done = jobs.set_completed(job.id)
        assert done.completed
        assert done.completed_at == clock.now()
        assert store.get_job(job.id).total_duration_min == 3

    def test_toggle_completed(self, jobs, job):
        assert jobs.toggle_completed(job.id).completed
        reopened = jobs.toggle_completed(job.id)
        assert not reopened.completed
        assert reopened.completed_at is None

    def test_edit_session_recomputes_total(self, jobs, job, clock, store):
        jobs.start_timer(job.id)
        clock.advance(minutes=5)
        stopped = jobs.stop_timer(job.id)
        session = stopped.sessions[0]
        jobs.edit_session(job.id, session.id, ended_at=session.started_at + timedelta(minutes=40))
        assert store.get_job(job.id).total_duration_min == 40

    def test_edit_session_rejects_inverted_bounds(self, jobs, job, clock, store):
        jobs.start_timer(job.id)
        clock.advance(minutes=5)
        session = jobs.stop_timer(job.id).sessions[0]
        with pytest.raises(ValidationError):
            jobs.edit_session(job.id, session.id, ended_at=session.started_at)
        assert store.get_job(job.id).total_duration_min == 5


# ── Delete & attachments ──────────────────────────────────────────────────────


class TestDeleteJob:
    def test_cascades_attachments(self, jobs, job, store):
        jobs.add_photo(job.id, "data:image/png;base64,AAA", caption="before")
        jobs.add_photo(job.id, "data:image/png;base64,BBB", caption="after")
        jobs.add_voice_note(job.id, "data:audio/webm;base64,CCC", duration_sec=4.2)

        jobs.delete_job(job.id)

        assert store.photos_for_job(job.id) == []
        assert store.voice_notes_for_job(job.id) == []
        assert store.get_job(job.id) is None
        # Tombstone waits for the remote to confirm
        assert store.get_job(job.id, include_deleted=True).deleted_at is not None
        assert {c.entity_id: c.op for c in store.pending_changes("job")}[job.id] == "delete"

    def test_other_jobs_keep_attachments(self, jobs, job, store):
        other = jobs.create_job("CLIENT002")
        jobs.add_photo(other.id, "data:,x")
        jobs.delete_job(job.id)
        assert len(store.photos_for_job(other.id)) == 1

    def test_get_with_media(self, jobs, job):
        jobs.add_photo(job.id, "data:,x")
        jobs.add_voice_note(job.id, "data:,y", transcript="check valve")
        media = jobs.get_with_media(job.id)
        assert media["job"].id == job.id
        assert len(media["photos"]) == 1
        assert media["voice_notes"][0].transcript == "check valve"

    def test_attachment_for_unknown_job(self, jobs):
        with pytest.raises(ValidationError):
            jobs.add_photo("missing", "data:,x")
