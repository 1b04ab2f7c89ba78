"""Tests for fieldcapture.core.db — LocalStore CRUD, sync queue, watermarks."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from fieldcapture.core.clock import EPOCH
from fieldcapture.core.db import LocalStore
from fieldcapture.core.errors import StorageUnavailable, ValidationError
from fieldcapture.core.models import Client, Job, Photo, TimeSession, VoiceNote

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def _make_job(**overrides) -> Job:
    defaults = dict(
        id="job-001",
        client_ref="CLIENT001",
        client_name="ABC Plumbing",
        created_at=T0,
        notes="Leaking tap",
    )
    defaults.update(overrides)
    return Job(**defaults)


def _make_client(**overrides) -> Client:
    defaults = dict(id="cl-001", ref="CLIENT001", name="ABC Plumbing", created_at=T0)
    defaults.update(overrides)
    return Client(**defaults)


# ── Schema ────────────────────────────────────────────────────────────────────


class TestInitialization:
    def test_creates_tables(self, store):
        conn = store._conn()
        tables = {
            r[0]
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        expected = {"schema_version", "jobs", "clients", "photos",
                    "voice_notes", "sync_queue", "sync_state"}
        assert expected.issubset(tables)

    def test_initialize_idempotent(self, store):
        store.initialize()
        store.initialize()
        row = store._conn().execute(
            "SELECT COUNT(*) as c FROM schema_version"
        ).fetchone()
        assert row["c"] == 1


# ── Jobs ──────────────────────────────────────────────────────────────────────


class TestJobs:
    def test_put_and_get(self, store):
        job = _make_job(sessions=[
            TimeSession(id="s1", started_at=T0, ended_at=T0 + timedelta(minutes=5), duration_min=5),
        ], total_duration_min=5)
        store.put_job(job)
        got = store.get_job("job-001")
        assert got.notes == "Leaking tap"
        assert got.sessions[0].ended_at == T0 + timedelta(minutes=5)
        assert got.total_duration_min == 5
        assert got.dirty

    def test_put_replaces(self, store):
        store.put_job(_make_job())
        store.put_job(_make_job(notes="Replaced"))
        assert store.get_job("job-001").notes == "Replaced"
        assert len(store.list_jobs()) == 1

    def test_revision_bumped_per_write(self, store):
        job = _make_job()
        store.put_job(job)
        store.put_job(job)
        assert job.revision == 2
        assert store.get_job("job-001").revision == 2

    def test_dirty_listing(self, store):
        store.put_job(_make_job(id="a"))
        store.put_job(_make_job(id="b", dirty=False))
        assert [j.id for j in store.list_dirty_jobs()] == ["a"]

    def test_by_client(self, store):
        store.put_job(_make_job(id="a"))
        store.put_job(_make_job(id="b", client_ref="OTHER"))
        assert [j.id for j in store.jobs_by_client("CLIENT001")] == ["a"]

    def test_get_missing(self, store):
        assert store.get_job("nope") is None
        assert store.delete_job("nope") is False


class TestMarkSynced:
    def test_clears_dirty_and_queue(self, store):
        job = store.put_job(_make_job())
        assert store.mark_job_synced(job.id, T0, job.revision)
        got = store.get_job(job.id)
        assert not got.dirty
        assert got.synced_at == T0
        assert store.unsynced_count() == 0

    def test_stale_revision_keeps_dirty(self, store):
        job = store.put_job(_make_job())
        uploaded_rev = job.revision
        store.put_job(job)  # edited while uploading
        assert not store.mark_job_synced(job.id, T0, uploaded_rev)
        got = store.get_job(job.id)
        assert got.dirty
        assert got.synced_at == T0
        assert store.unsynced_count() == 1


class TestDeleteJob:
    def test_tombstone_and_cascade(self, store):
        store.put_job(_make_job())
        store.add_photo(Photo(id="p1", job_id="job-001", data="x"))
        store.add_photo(Photo(id="p2", job_id="job-001", data="y"))
        store.put_voice_note(VoiceNote(id="v1", job_id="job-001", audio="z"))

        assert store.delete_job("job-001")

        assert store.photos_for_job("job-001") == []
        assert store.voice_notes_for_job("job-001") == []
        assert store.get_job("job-001") is None
        assert store.list_jobs() == []
        tomb = store.get_job("job-001", include_deleted=True)
        assert tomb.deleted_at is not None
        assert [j.id for j in store.list_dirty_jobs()] == ["job-001"]

    def test_delete_supersedes_pending_upsert(self, store):
        store.put_job(_make_job())
        store.delete_job("job-001")
        changes = store.pending_changes("job")
        assert [(c.entity_id, c.op) for c in changes] == [("job-001", "delete")]

    def test_purge(self, store):
        store.put_job(_make_job())
        store.delete_job("job-001")
        store.purge_job("job-001")
        assert store.get_job("job-001", include_deleted=True) is None
        assert store.unsynced_count() == 0


# ── Clients ───────────────────────────────────────────────────────────────────


class TestClients:
    def test_lookup_by_ref_is_case_insensitive(self, store):
        store.put_client(_make_client())
        assert store.get_client_by_ref(" client001 ").id == "cl-001"

    def test_duplicate_ref_is_validation_error(self, store):
        store.put_client(_make_client())
        with pytest.raises(ValidationError):
            store.put_client(_make_client(id="cl-002"))

    def test_list_order(self, store):
        store.put_client(_make_client(id="1", ref="A"))
        store.put_client(_make_client(id="2", ref="B", last_used_at=T0))
        store.put_client(_make_client(id="3", ref="C", last_used_at=T0 + timedelta(hours=1)))
        assert [c.ref for c in store.list_clients()] == ["C", "B", "A"]

    def test_mark_synced(self, store):
        c = store.put_client(_make_client())
        assert store.mark_client_synced(c.id, T0, c.revision)
        assert store.list_dirty_clients() == []


# ── Sync bookkeeping ──────────────────────────────────────────────────────────


class TestWatermarks:
    def test_defaults_to_epoch(self, store):
        assert store.get_watermark("u1", "jobs") == EPOCH

    def test_only_moves_forward(self, store):
        assert store.advance_watermark("u1", "jobs", T0) == T0
        assert store.advance_watermark("u1", "jobs", T0 - timedelta(days=1)) == T0
        assert store.get_watermark("u1", "jobs") == T0

    def test_scoped_per_user_and_table(self, store):
        store.advance_watermark("u1", "jobs", T0)
        assert store.get_watermark("u2", "jobs") == EPOCH
        assert store.get_watermark("u1", "clients") == EPOCH


class TestQueue:
    def test_record_failure(self, store):
        store.put_job(_make_job())
        store.record_push_failure("job-001", "503 overloaded")
        store.record_push_failure("job-001", "timeout")
        change = store.pending_changes()[0]
        assert change.attempts == 2
        assert change.last_error == "timeout"

    def test_stats(self, store):
        store.put_job(_make_job())
        store.put_client(_make_client())
        stats = store.stats()
        assert stats["jobs"] == 1
        assert stats["clients"] == 1
        assert stats["unsynced"] == 2


class TestStorageErrors:
    def test_sqlite_failure_becomes_storage_unavailable(self, tmp_path):
        db = LocalStore(tmp_path / "broken.db")
        db.initialize()
        db._conn().execute("DROP TABLE jobs")
        with pytest.raises(StorageUnavailable):
            db.list_jobs()
        db.close()

    def test_unopenable_path(self, tmp_path):
        target = tmp_path / "dir.db"
        target.mkdir()
        db = LocalStore(target)
        with pytest.raises(StorageUnavailable):
            db.initialize()

    def test_error_is_not_bare_sqlite(self, store):
        store.close()
        store._local.conn = sqlite3.connect(":memory:")
        with pytest.raises(StorageUnavailable):
            store.get_job("x")
