"""Shared fixtures: temp local store, manual clock, in-process remote and feed."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from fieldcapture.core.clock import ManualClock, from_iso, to_iso
from fieldcapture.core.db import LocalStore
from fieldcapture.core.errors import NetworkError
from fieldcapture.sync.engine import SyncEngine
from fieldcapture.sync.events import EventBus
from fieldcapture.sync.realtime import ChangeFeed
from fieldcapture.sync.remote import RemoteStore
from fieldcapture.sync.wire import parse_change_event
from fieldcapture.work.clients import ClientService
from fieldcapture.work.jobs import JobService

USER = "user-1"


class FakeRemoteStore(RemoteStore):
    """Dict-backed remote with its own monotonically increasing clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.tables: Dict[str, Dict[str, dict]] = {"jobs": {}, "clients": {}}
        self._server_now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.fail_ids = set()
        self.offline = False
        self.fetch_gate: Optional[asyncio.Event] = None

        self.upserts: List[tuple] = []
        self.fetches: List[str] = []
        self.deletes: List[tuple] = []
        self.broadcasts: List[tuple] = []

    def _stamp(self) -> str:
        self._server_now += timedelta(seconds=1)
        return to_iso(self._server_now)

    def _check(self, entity_id: Optional[str] = None) -> None:
        if self.offline:
            raise NetworkError("remote unreachable")
        if entity_id is not None and entity_id in self.fail_ids:
            raise NetworkError(f"upload of {entity_id} rejected", status=503)

    def put_remote(self, table: str, row: dict) -> dict:
        """A write made by another device, stamped by the server."""
        stored = dict(row)
        stored.setdefault("user_id", USER)
        stored["updated_at"] = self._stamp()
        self.tables[table][stored["id"]] = stored
        return dict(stored)

    async def upsert(self, table, row):
        await asyncio.sleep(0)
        self._check(row["id"])
        self.upserts.append((table, row["id"]))
        existing = self.tables[table].get(row["id"], {})
        stored = {**existing, **row, "updated_at": self._stamp()}
        self.tables[table][row["id"]] = stored
        return dict(stored)

    async def fetch_since(self, table, user_id, since):
        self.fetches.append(table)
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        await asyncio.sleep(0)
        self._check()
        rows = [
            dict(r)
            for r in self.tables[table].values()
            if r.get("user_id") == user_id and from_iso(r["updated_at"]) > since
        ]
        return sorted(rows, key=lambda r: r["updated_at"])

    async def delete(self, table, entity_id):
        await asyncio.sleep(0)
        self._check(entity_id)
        self.deletes.append((table, entity_id))
        self.tables[table].pop(entity_id, None)

    async def broadcast(self, event, payload):
        self._check()
        self.broadcasts.append((event, payload))


class FakeFeed(ChangeFeed):
    """Change feed driven by the test."""

    def __init__(self):
        self.connected = False
        self.closed = False
        self.user_id = None
        self._on_change = None
        self._on_broadcast = None
        self._on_degraded = None

    async def subscribe(self, user_id, on_change, on_broadcast, on_degraded):
        self.user_id = user_id
        self._on_change = on_change
        self._on_broadcast = on_broadcast
        self._on_degraded = on_degraded
        self.connected = True

    async def close(self):
        self.connected = False
        self.closed = True

    async def push(self, message: dict):
        await self._on_change(parse_change_event(message))

    async def peer(self, event: str, payload: dict):
        await self._on_broadcast(event, payload)

    def drop(self, reason="socket closed"):
        self.connected = False
        self._on_degraded(reason)


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(tmp_path, clock):
    """Fresh local store per test."""
    db = LocalStore(tmp_path / "test.db", clock=clock)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def received(bus):
    """Every notification emitted on the bus, in order."""
    seen = []
    bus.subscribe(seen.append)
    return seen


@pytest.fixture
def jobs(store, clock, bus):
    return JobService(store, clock=clock, bus=bus)


@pytest.fixture
def clients(store, clock, bus):
    svc = ClientService(store, clock=clock, bus=bus)
    svc.seed_defaults()
    return svc


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def feed():
    return FakeFeed()


@pytest_asyncio.fixture
async def engine(store, remote, feed, clock, bus):
    eng = SyncEngine(
        store,
        remote,
        feed=feed,
        clock=clock,
        bus=bus,
        poll_interval=3600,
        debounce=0,
    )
    await eng.init(USER)
    yield eng
    await eng.dispose()
