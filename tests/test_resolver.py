"""Tests for fieldcapture.sync.resolver — last-write-wins decisions."""

from datetime import datetime, timedelta, timezone

from fieldcapture.core.models import Client, Job
from fieldcapture.sync.resolver import Action, LastWriteWins

T1 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _job(**overrides) -> Job:
    defaults = dict(
        id="job-1",
        client_ref="CLIENT001",
        client_name="ABC Plumbing",
        created_at=T1 - timedelta(days=1),
        dirty=False,
        synced_at=T1,
    )
    defaults.update(overrides)
    return Job(**defaults)


class TestLastWriteWins:
    def setup_method(self):
        self.resolver = LastWriteWins()

    def test_absent_locally_inserts(self):
        res = self.resolver.resolve(None, T1)
        assert res.action == Action.INSERT
        assert res.applies_remote

    def test_newer_remote_replaces(self):
        res = self.resolver.resolve(_job(), T1 + timedelta(seconds=1))
        assert res.action == Action.REPLACE
        assert not res.discards_local_edit

    def test_equal_timestamp_keeps(self):
        res = self.resolver.resolve(_job(), T1)
        assert res.action == Action.KEEP
        assert not res.applies_remote

    def test_older_remote_keeps(self):
        assert self.resolver.resolve(_job(), T1 - timedelta(hours=1)).action == Action.KEEP

    def test_never_synced_local_is_replaced_by_any_remote(self):
        res = self.resolver.resolve(_job(synced_at=None, dirty=True), T1)
        assert res.action == Action.REPLACE
        assert res.discards_local_edit

    def test_pending_local_delete_keeps(self):
        local = _job(deleted_at=T1, dirty=True)
        assert self.resolver.resolve(local, T1 + timedelta(days=1)).action == Action.KEEP

    def test_clients_use_same_rule(self):
        client = Client(id="c1", ref="CLIENT001", name="ABC", dirty=False, synced_at=T1)
        assert self.resolver.resolve(client, T1).action == Action.KEEP
        assert self.resolver.resolve(client, T1 + timedelta(seconds=1)).action == Action.REPLACE
