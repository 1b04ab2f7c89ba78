"""
Sync engine — keeps the local store and the remote store converging.

Lifecycle: ``init(user_id)`` subscribes to the realtime feed, pulls once and
starts the fallback poll; ``dispose()`` tears all of that down. Push and
pull are per-entity: one failed upload leaves that entity dirty without
undoing the others, and the watermark only ever advances to the newest
``updated_at`` actually received.

State machine:

    IDLE -> PULLING -> MERGING -> (PULLING ...) -> IDLE
    IDLE -> PUSHING -> IDLE
    any  -> ERROR -> IDLE        (after a SyncError notification)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from ..core.clock import Clock, to_iso
from ..core.db import LocalStore
from ..core.errors import NetworkError, StorageUnavailable, ValidationError
from ..core.models import Client, Job
from .events import (
    ChannelDegraded,
    ClientsUpdated,
    ConflictDiscarded,
    EventBus,
    JobsUpdated,
    Listener,
    Notification,
    PeerSyncRequested,
    SyncError,
    SyncStateChanged,
)
from .realtime import ChangeFeed
from .remote import RemoteStore
from .resolver import LastWriteWins
from .wire import (
    CLIENTS,
    EVENT_DELETE,
    JOBS,
    ChangeEvent,
    client_to_row,
    job_to_row,
    row_to_client,
    row_to_job,
    row_updated_at,
)

logger = logging.getLogger(__name__)

FORCE_SYNC_EVENT = "force-sync"

# Raised while translating a remote row that does not have the expected shape.
ROW_ERRORS = (AttributeError, KeyError, TypeError, ValueError)


class SyncState(str, Enum):
    IDLE = "idle"
    PULLING = "pulling"
    MERGING = "merging"
    PUSHING = "pushing"
    ERROR = "error"


class SyncEngine:
    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        *,
        feed: Optional[ChangeFeed] = None,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
        resolver: Optional[LastWriteWins] = None,
        poll_interval: float = 30.0,
        debounce: float = 5.0,
    ):
        self.store = store
        self.remote = remote
        self.feed = feed
        self.clock = clock or store.clock
        self.bus = bus or EventBus()
        self.resolver = resolver or LastWriteWins()
        self.poll_interval = poll_interval
        self.debounce = debounce

        self.user_id: Optional[str] = None
        self.device_id = uuid.uuid4().hex
        self._state = SyncState.IDLE

        self._push_lock = asyncio.Lock()
        self._pulling = False
        self._pull_requested = False
        self._deferred_pull: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def init(self, user_id: str, *, poll: bool = True) -> None:
        if self.user_id is not None:
            if self.user_id == user_id:
                return
            await self.dispose()
        self.user_id = user_id
        logger.info(f"Sync engine starting for user {user_id}")

        if self.feed is not None:
            await self.feed.subscribe(
                user_id, self.handle_change, self.handle_broadcast, self._on_degraded
            )

        await self.sync_from_server()
        if poll:
            self._poll_task = asyncio.create_task(self._poll_loop(), name="sync-poll")

    async def dispose(self) -> None:
        tasks = list(self._tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Sync task ended with an error: {result!r}")
        self._poll_task = None
        self._deferred_pull = None
        self._tasks.clear()
        self._pull_requested = False

        if self.feed is not None:
            await self.feed.close()
        logger.info(f"Sync engine stopped for user {self.user_id}")
        self.user_id = None

    async def _poll_loop(self) -> None:
        # Runs on a fixed cadence whether or not the last pass succeeded.
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.sync_to_server()
                await self.sync_from_server()
            except Exception as e:
                self._fail("poll", e)

    # ── State & accessors ─────────────────────────────────────────────────

    @property
    def state(self) -> SyncState:
        return self._state

    def _set_state(self, new: SyncState) -> None:
        if new == self._state:
            return
        previous, self._state = self._state, new
        logger.debug(f"Sync state {previous.value} -> {new.value}")
        self.bus.emit(SyncStateChanged(previous=previous.value, current=new.value))

    def subscribe(self, listener: Listener, *kinds: type) -> Callable[[], None]:
        return self.bus.subscribe(listener, *kinds)

    def unsynced_count(self) -> int:
        return self.store.unsynced_count()

    def watermark(self, table: str) -> datetime:
        return self.store.get_watermark(self._require_user(), table)

    def _require_user(self) -> str:
        if self.user_id is None:
            raise ValidationError("Sync engine is not initialised (call init first)")
        return self.user_id

    def _fail(self, operation: str, error: Exception) -> None:
        logger.error(f"Sync {operation} failed: {error}")
        self._set_state(SyncState.ERROR)
        self.bus.emit(SyncError(operation=operation, message=str(error)))
        self._set_state(SyncState.IDLE)

    def _emit(self, event: Notification) -> None:
        self.bus.emit(event)

    # ── Push ──────────────────────────────────────────────────────────────

    async def sync_to_server(self) -> Dict[str, int]:
        """Upload every dirty entity and every pending delete, one by one."""
        user_id = self._require_user()
        result = {"pushed": 0, "deleted": 0, "failed": 0}

        async with self._push_lock:
            self._set_state(SyncState.PUSHING)
            try:
                for client in self.store.list_dirty_clients():
                    if await self._push_client(client, user_id):
                        result["pushed"] += 1
                    else:
                        result["failed"] += 1

                for job in self.store.list_dirty_jobs():
                    if job.deleted_at is not None:
                        continue
                    if await self._push_job(job, user_id):
                        result["pushed"] += 1
                    else:
                        result["failed"] += 1

                for change in self.store.pending_changes():
                    if change.op != "delete":
                        continue
                    if await self._push_delete(change.kind, change.entity_id):
                        result["deleted"] += 1
                    else:
                        result["failed"] += 1
            except StorageUnavailable as e:
                self._fail("push", e)
                return result

            if result["failed"]:
                self._fail("push", NetworkError(f"{result['failed']} change(s) not uploaded"))
            else:
                self._set_state(SyncState.IDLE)

        if result["pushed"] or result["deleted"]:
            logger.info(
                f"Pushed {result['pushed']} change(s), {result['deleted']} delete(s)"
            )
        return result

    async def _push_job(self, job: Job, user_id: str) -> bool:
        row = job_to_row(job, user_id, self.clock.now())
        try:
            stored = await self.remote.upsert(JOBS, row)
        except NetworkError as e:
            logger.warning(f"Upload of job {job.id} failed: {e}")
            self.store.record_push_failure(job.id, str(e))
            return False

        confirmed = row_updated_at(stored) or self.clock.now()
        if not self.store.mark_job_synced(job.id, confirmed, job.revision):
            logger.debug(f"Job {job.id} changed during upload; stays dirty")
        return True

    async def _push_client(self, client: Client, user_id: str) -> bool:
        try:
            stored = await self.remote.upsert(CLIENTS, client_to_row(client, user_id))
        except NetworkError as e:
            logger.warning(f"Upload of client {client.ref} failed: {e}")
            self.store.record_push_failure(client.id, str(e))
            return False

        confirmed = row_updated_at(stored) or self.clock.now()
        self.store.mark_client_synced(client.id, confirmed, client.revision)
        return True

    async def _push_delete(self, kind: str, entity_id: str) -> bool:
        table = JOBS if kind == "job" else CLIENTS
        try:
            await self.remote.delete(table, entity_id)
        except NetworkError as e:
            logger.warning(f"Remote delete of {kind} {entity_id} failed: {e}")
            self.store.record_push_failure(entity_id, str(e))
            return False

        if table == JOBS:
            self.store.purge_job(entity_id)
        else:
            self.store.purge_client(entity_id)
        return True

    # ── Pull ──────────────────────────────────────────────────────────────

    async def sync_from_server(self) -> None:
        """Fetch remote changes since the watermarks and merge them.

        Only one pull runs at a time. A request arriving mid-pull is folded
        into a single deferred re-run once the active pull finishes.
        """
        user_id = self._require_user()
        if self._pulling:
            self._pull_requested = True
            logger.debug("Pull already in flight; deferring a re-run")
            return

        self._pulling = True
        try:
            await self._pull(user_id)
        finally:
            self._pulling = False

        if self._pull_requested:
            self._pull_requested = False
            self._schedule_deferred_pull()

    def request_pull(self) -> None:
        """Ask for a pull without waiting for it."""
        if self._pulling:
            self._pull_requested = True
            return
        self._schedule_deferred_pull(delay=0)

    def _schedule_deferred_pull(self, delay: Optional[float] = None) -> None:
        # At most one pull waiting to start.
        if self._deferred_pull is not None:
            return
        wait = self.debounce if delay is None else delay

        async def _run() -> None:
            try:
                await asyncio.sleep(wait)
            finally:
                self._deferred_pull = None
            await self.sync_from_server()

        task = asyncio.create_task(_run(), name="sync-deferred-pull")
        self._deferred_pull = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until no scheduled pull is pending or running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _pull(self, user_id: str) -> None:
        changed_jobs = []
        changed_clients = []
        held_back = 0
        try:
            # Clients first so incoming jobs find their client locally.
            for table, changed in ((CLIENTS, changed_clients), (JOBS, changed_jobs)):
                self._set_state(SyncState.PULLING)
                since = self.store.get_watermark(user_id, table)
                rows = await self.remote.fetch_since(table, user_id, since)

                self._set_state(SyncState.MERGING)
                # Another pull may have recorded a newer watermark meanwhile.
                floor = self.store.get_watermark(user_id, table)
                newest = floor
                held = False
                for row in rows:
                    try:
                        updated_at = row_updated_at(row)
                    except ROW_ERRORS as e:
                        logger.warning(f"Skipping {table} row {row.get('id')}: bad updated_at ({e})")
                        continue
                    if updated_at is None:
                        logger.warning(f"Skipping {table} row {row.get('id')} without updated_at")
                        continue
                    if updated_at <= floor:
                        continue

                    try:
                        applied = await self._merge_row(table, row, updated_at, user_id)
                    except ROW_ERRORS as e:
                        logger.warning(f"Skipping malformed {table} row {row.get('id')}: {e!r}")
                        applied = False
                    if applied is None:
                        # Not merged; the next pull must see this row again.
                        held = True
                        held_back += 1
                    elif applied:
                        changed.append(str(row["id"]))
                    if not held:
                        newest = max(newest, updated_at)
                self.store.advance_watermark(user_id, table, newest)
                logger.debug(f"Pulled {len(rows)} {table} row(s); watermark {to_iso(newest)}")
        except (NetworkError, StorageUnavailable) as e:
            self._fail("pull", e)
        else:
            if held_back:
                self._fail("pull", NetworkError(f"{held_back} row(s) held until local edits upload"))
            else:
                self._set_state(SyncState.IDLE)

        if changed_clients:
            self._emit(ClientsUpdated(client_ids=tuple(changed_clients)))
        if changed_jobs:
            self._emit(JobsUpdated(job_ids=tuple(changed_jobs)))

    # ── Merge ─────────────────────────────────────────────────────────────

    async def _merge_row(
        self, table: str, row: Dict[str, Any], updated_at: datetime, user_id: str
    ) -> Optional[bool]:
        """Apply one remote row.

        Returns True when the local copy was replaced or inserted, False when
        the local copy was kept, and None when a dirty local copy could not be
        uploaded first so the row was left for a later pass.
        """
        if table == JOBS:
            return await self._merge_job(row, updated_at, user_id)
        return await self._merge_client(row, updated_at, user_id)

    async def _merge_job(
        self, row: Dict[str, Any], updated_at: datetime, user_id: str
    ) -> Optional[bool]:
        job_id = str(row["id"])
        local = self.store.get_job(job_id, include_deleted=True)

        if local is not None and local.dirty and local.deleted_at is None:
            last_synced = local.synced_at
            async with self._push_lock:
                # A push pass may have uploaded or deleted it while we waited.
                local = self.store.get_job(job_id, include_deleted=True)
                pending = local is not None and local.dirty and local.deleted_at is None
                if pending and not await self._push_job(local, user_id):
                    logger.info(f"Job {job_id}: upload failed, keeping unsaved local edit")
                    return None
            if last_synced is None or updated_at > last_synced:
                logger.info(f"Job {job_id}: local edit uploaded over remote change")
                self._emit(
                    ConflictDiscarded(
                        table=JOBS,
                        entity_id=job_id,
                        kept="local",
                        discarded_updated_at=updated_at,
                    )
                )
            local = self.store.get_job(job_id, include_deleted=True)

        resolution = self.resolver.resolve(local, updated_at)
        if not resolution.applies_remote:
            logger.debug(f"Job {job_id}: keep local ({resolution.reason})")
            return False

        incoming = row_to_job(row)
        if local is not None:
            incoming.revision = local.revision
        self.store.put_job(incoming)
        # Drops any queue entry left by a superseded local edit.
        self.store.mark_job_synced(job_id, updated_at, incoming.revision)
        if resolution.discards_local_edit:
            logger.info(f"Job {job_id}: local edit replaced by newer remote version")
            self._emit(
                ConflictDiscarded(
                    table=JOBS, entity_id=job_id, kept="remote", discarded_updated_at=None
                )
            )
        logger.debug(f"Job {job_id}: {resolution.action.value} ({resolution.reason})")
        return True

    async def _merge_client(
        self, row: Dict[str, Any], updated_at: datetime, user_id: str
    ) -> Optional[bool]:
        client_id = str(row["id"])
        local = self.store.get_client(client_id)

        if local is not None and local.dirty:
            last_synced = local.synced_at
            async with self._push_lock:
                local = self.store.get_client(client_id)
                if local is not None and local.dirty and not await self._push_client(local, user_id):
                    logger.info(f"Client {local.ref}: upload failed, keeping unsaved local edit")
                    return None
            if last_synced is None or updated_at > last_synced:
                self._emit(
                    ConflictDiscarded(
                        table=CLIENTS,
                        entity_id=client_id,
                        kept="local",
                        discarded_updated_at=updated_at,
                    )
                )
            local = self.store.get_client(client_id)

        resolution = self.resolver.resolve(local, updated_at)
        if not resolution.applies_remote:
            return False

        incoming = row_to_client(row, last_used_at=local.last_used_at if local else None)
        # The reference code is unique locally; the server's record wins it.
        holder = self.store.get_client_by_ref(incoming.ref)
        if holder is not None and holder.id != client_id:
            logger.info(f"Client {incoming.ref}: adopting server id {client_id}")
            if incoming.last_used_at is None:
                incoming.last_used_at = holder.last_used_at
            self.store.purge_client(holder.id)

        if local is not None:
            incoming.revision = local.revision
        self.store.put_client(incoming)
        self.store.mark_client_synced(client_id, updated_at, incoming.revision)
        return True

    # ── Realtime ──────────────────────────────────────────────────────────

    async def handle_change(self, event: ChangeEvent) -> None:
        """Apply one pushed change through the same path as a pull."""
        user_id = self._require_user()
        try:
            if event.event_type == EVENT_DELETE:
                self._apply_remote_delete(event)
                return

            updated_at = row_updated_at(event.row)
            if updated_at is None:
                logger.warning(f"Realtime {event.table} row {event.entity_id} has no updated_at")
                return
            applied = await self._merge_row(event.table, event.row, updated_at, user_id)
            if applied is None:
                # The poll picks the row up again once the upload goes through.
                raise NetworkError(f"{event.table} row {event.entity_id} held until local edit uploads")
            if applied:
                if event.table == JOBS:
                    self._emit(JobsUpdated(job_ids=(event.entity_id,)))
                else:
                    self._emit(ClientsUpdated(client_ids=(event.entity_id,)))
        except ROW_ERRORS as e:
            logger.warning(f"Realtime: skipping malformed {event.table} row {event.entity_id}: {e!r}")
        except (NetworkError, StorageUnavailable) as e:
            self._fail("realtime", e)

    def _apply_remote_delete(self, event: ChangeEvent) -> None:
        entity_id = event.entity_id
        if event.table == JOBS:
            if self.store.get_job(entity_id, include_deleted=True) is None:
                return
            self.store.purge_job(entity_id)
            logger.info(f"Job {entity_id} deleted remotely")
            self._emit(JobsUpdated(job_ids=(entity_id,)))
        else:
            if self.store.get_client(entity_id) is None:
                return
            self.store.purge_client(entity_id)
            self._emit(ClientsUpdated(client_ids=(entity_id,)))

    async def handle_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        if event != FORCE_SYNC_EVENT:
            return
        if payload.get("user_id") != self.user_id or payload.get("origin") == self.device_id:
            return
        logger.info("Peer device requested a sync")
        self._emit(PeerSyncRequested(user_id=self.user_id))
        self.request_pull()

    def _on_degraded(self, reason: str) -> None:
        self._emit(ChannelDegraded(reason=reason))

    # ── Force ─────────────────────────────────────────────────────────────

    async def force_sync(self) -> Dict[str, int]:
        """Push, then pull, then tell the user's other devices to pull too."""
        user_id = self._require_user()
        result = await self.sync_to_server()
        await self.sync_from_server()
        try:
            await self.remote.broadcast(
                FORCE_SYNC_EVENT,
                {
                    "user_id": user_id,
                    "timestamp": to_iso(self.clock.now()),
                    "origin": self.device_id,
                },
            )
        except NetworkError as e:
            logger.warning(f"Force-sync broadcast failed: {e}")
            self._emit(SyncError(operation="broadcast", message=str(e)))
        return result
