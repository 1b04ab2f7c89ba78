"""
SQLite local store for FieldCapture.

Single-file implementation: schema, per-entity CRUD, sync queue, watermarks.
The local store is the source of truth while offline; every write is a
single-entity upsert and commits before returning.
"""

from __future__ import annotations

import functools
import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .clock import EPOCH, Clock, SystemClock, from_iso, to_iso
from .errors import StorageUnavailable, ValidationError
from .models import Client, Job, PendingChange, Photo, TimeSession, VoiceNote

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ── Schema ────────────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now')),
    description TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    client_ref TEXT NOT NULL,
    client_name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    sessions TEXT NOT NULL DEFAULT '[]',
    total_duration_min INTEGER NOT NULL DEFAULT 0,
    notes TEXT NOT NULL DEFAULT '',
    priority INTEGER NOT NULL DEFAULT 5,
    completed INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    location TEXT NOT NULL DEFAULT 'OnSite',
    dirty INTEGER NOT NULL DEFAULT 1,
    synced_at TEXT,
    deleted_at TEXT,
    revision INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS clients (
    id TEXT PRIMARY KEY,
    ref TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    tier TEXT,
    created_at TEXT,
    last_used_at TEXT,
    dirty INTEGER NOT NULL DEFAULT 1,
    synced_at TEXT,
    revision INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS photos (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    data TEXT NOT NULL,
    caption TEXT DEFAULT '',
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS voice_notes (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    audio TEXT NOT NULL,
    duration_sec REAL DEFAULT 0,
    transcript TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS sync_queue (
    entity_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    op TEXT NOT NULL,
    queued_at TEXT NOT NULL,
    attempts INTEGER DEFAULT 0,
    last_error TEXT
);

CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_jobs_client ON jobs(client_ref);
CREATE INDEX IF NOT EXISTS idx_jobs_dirty ON jobs(dirty);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_photos_job ON photos(job_id);
CREATE INDEX IF NOT EXISTS idx_voice_notes_job ON voice_notes(job_id);
"""


def _storage_op(fn):
    """Translate sqlite failures into the store's error taxonomy."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.IntegrityError as e:
            raise ValidationError(str(e)) from e
        except sqlite3.Error as e:
            logger.error(f"Local store failure in {fn.__name__}: {e}")
            raise StorageUnavailable(str(e)) from e

    return wrapper


def _sessions_to_json(sessions: List[TimeSession]) -> str:
    return json.dumps(
        [
            {
                "id": s.id,
                "started_at": to_iso(s.started_at),
                "ended_at": to_iso(s.ended_at),
                "duration_min": s.duration_min,
            }
            for s in sessions
        ]
    )


def _sessions_from_json(raw: Optional[str]) -> List[TimeSession]:
    items = json.loads(raw) if raw else []
    return [
        TimeSession(
            id=item["id"],
            started_at=from_iso(item["started_at"]),
            ended_at=from_iso(item.get("ended_at")),
            duration_min=item.get("duration_min"),
        )
        for item in items
    ]


# ── Local Store ───────────────────────────────────────────────────────────────


class LocalStore:
    """On-device SQLite store: jobs, clients, attachments, sync bookkeeping."""

    def __init__(self, db_path: Path, *, clock: Optional[Clock] = None):
        self.db_path = Path(db_path).expanduser()
        self.clock = clock or SystemClock()
        self._local = threading.local()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn

        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA busy_timeout=5000;")
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        self._local.conn = conn
        return conn

    @_storage_op
    def initialize(self) -> None:
        """Create tables if this is a fresh database."""
        conn = self._conn()
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, description) VALUES (?, ?)",
            (SCHEMA_VERSION, "FieldCapture initial schema"),
        )
        conn.commit()

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn:
            conn.close()
            self._local.conn = None

    def _now(self) -> str:
        return to_iso(self.clock.now())

    def _enqueue(self, conn: sqlite3.Connection, entity_id: str, kind: str, op: str) -> None:
        # One entry per entity; a later delete supersedes a pending upsert.
        conn.execute(
            """INSERT INTO sync_queue (entity_id, kind, op, queued_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(entity_id) DO UPDATE SET
                 op=CASE WHEN sync_queue.op='delete' THEN 'delete' ELSE excluded.op END,
                 queued_at=excluded.queued_at""",
            (entity_id, kind, op, self._now()),
        )

    # ── Jobs ──────────────────────────────────────────────────────────────

    @_storage_op
    def put_job(self, job: Job) -> Job:
        """Upsert a job. Dirty jobs are queued for push.

        Bumps ``job.revision`` in place so callers can detect writes that
        landed while an upload was in flight.
        """
        conn = self._conn()
        job.revision += 1
        conn.execute(
            """INSERT INTO jobs
               (id, client_ref, client_name, created_at, sessions, total_duration_min,
                notes, priority, completed, completed_at, location, dirty,
                synced_at, deleted_at, revision)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 client_ref=excluded.client_ref, client_name=excluded.client_name,
                 sessions=excluded.sessions,
                 total_duration_min=excluded.total_duration_min,
                 notes=excluded.notes, priority=excluded.priority,
                 completed=excluded.completed, completed_at=excluded.completed_at,
                 location=excluded.location, dirty=excluded.dirty,
                 synced_at=excluded.synced_at, deleted_at=excluded.deleted_at,
                 revision=excluded.revision""",
            (
                job.id,
                job.client_ref,
                job.client_name,
                to_iso(job.created_at),
                _sessions_to_json(job.sessions),
                job.total_duration_min,
                job.notes,
                job.priority,
                1 if job.completed else 0,
                to_iso(job.completed_at),
                job.location,
                1 if job.dirty else 0,
                to_iso(job.synced_at),
                to_iso(job.deleted_at),
                job.revision,
            ),
        )
        if job.dirty:
            op = "delete" if job.deleted_at else "upsert"
            self._enqueue(conn, job.id, "job", op)
        conn.commit()
        return job

    @_storage_op
    def get_job(self, job_id: str, *, include_deleted: bool = False) -> Optional[Job]:
        row = self._conn().execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        if not row:
            return None
        job = self._row_to_job(row)
        if job.deleted_at and not include_deleted:
            return None
        return job

    @_storage_op
    def list_jobs(self) -> List[Job]:
        rows = (
            self._conn()
            .execute(
                "SELECT * FROM jobs WHERE deleted_at IS NULL ORDER BY created_at DESC"
            )
            .fetchall()
        )
        return [self._row_to_job(r) for r in rows]

    @_storage_op
    def list_dirty_jobs(self) -> List[Job]:
        """Dirty jobs, tombstones included (the push pass needs both)."""
        rows = (
            self._conn()
            .execute("SELECT * FROM jobs WHERE dirty=1 ORDER BY created_at ASC")
            .fetchall()
        )
        return [self._row_to_job(r) for r in rows]

    @_storage_op
    def jobs_by_client(self, client_ref: str) -> List[Job]:
        rows = (
            self._conn()
            .execute(
                """SELECT * FROM jobs WHERE client_ref=? AND deleted_at IS NULL
                   ORDER BY created_at DESC""",
                (client_ref,),
            )
            .fetchall()
        )
        return [self._row_to_job(r) for r in rows]

    @_storage_op
    def delete_job(self, job_id: str) -> bool:
        """Cascade-delete attachments, then tombstone the job for remote delete."""
        conn = self._conn()
        row = conn.execute("SELECT revision FROM jobs WHERE id=?", (job_id,)).fetchone()
        if not row:
            return False
        conn.execute("DELETE FROM photos WHERE job_id=?", (job_id,))
        conn.execute("DELETE FROM voice_notes WHERE job_id=?", (job_id,))
        conn.execute(
            "UPDATE jobs SET deleted_at=?, dirty=1, revision=? WHERE id=?",
            (self._now(), row["revision"] + 1, job_id),
        )
        self._enqueue(conn, job_id, "job", "delete")
        conn.commit()
        return True

    @_storage_op
    def purge_job(self, job_id: str) -> None:
        """Hard delete a job and everything hanging off it."""
        conn = self._conn()
        conn.execute("DELETE FROM photos WHERE job_id=?", (job_id,))
        conn.execute("DELETE FROM voice_notes WHERE job_id=?", (job_id,))
        conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
        conn.execute("DELETE FROM sync_queue WHERE entity_id=?", (job_id,))
        conn.commit()

    @_storage_op
    def mark_job_synced(self, job_id: str, synced_at: datetime, revision: int) -> bool:
        """Record a confirmed upload.

        Clears the dirty flag only if nothing was written since ``revision``
        was read; otherwise just records the new confirmed-sync time.
        """
        conn = self._conn()
        cur = conn.execute(
            "UPDATE jobs SET dirty=0, synced_at=? WHERE id=? AND revision=?",
            (to_iso(synced_at), job_id, revision),
        )
        cleared = cur.rowcount > 0
        if cleared:
            conn.execute("DELETE FROM sync_queue WHERE entity_id=?", (job_id,))
        else:
            conn.execute(
                "UPDATE jobs SET synced_at=? WHERE id=?", (to_iso(synced_at), job_id)
            )
        conn.commit()
        return cleared

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            client_ref=row["client_ref"],
            client_name=row["client_name"],
            created_at=from_iso(row["created_at"]),
            sessions=_sessions_from_json(row["sessions"]),
            total_duration_min=row["total_duration_min"] or 0,
            notes=row["notes"] or "",
            priority=row["priority"],
            completed=row["completed"] in (1, "1", True),
            completed_at=from_iso(row["completed_at"]),
            location=row["location"],
            dirty=row["dirty"] in (1, "1", True),
            synced_at=from_iso(row["synced_at"]),
            deleted_at=from_iso(row["deleted_at"]),
            revision=row["revision"] or 0,
        )

    # ── Clients ───────────────────────────────────────────────────────────

    @_storage_op
    def put_client(self, c: Client) -> Client:
        conn = self._conn()
        c.revision += 1
        conn.execute(
            """INSERT INTO clients
               (id, ref, name, tier, created_at, last_used_at, dirty, synced_at, revision)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 ref=excluded.ref, name=excluded.name, tier=excluded.tier,
                 last_used_at=excluded.last_used_at, dirty=excluded.dirty,
                 synced_at=excluded.synced_at, revision=excluded.revision""",
            (
                c.id,
                c.ref,
                c.name,
                c.tier,
                to_iso(c.created_at) or self._now(),
                to_iso(c.last_used_at),
                1 if c.dirty else 0,
                to_iso(c.synced_at),
                c.revision,
            ),
        )
        if c.dirty:
            self._enqueue(conn, c.id, "client", "upsert")
        conn.commit()
        return c

    @_storage_op
    def get_client(self, client_id: str) -> Optional[Client]:
        row = self._conn().execute("SELECT * FROM clients WHERE id=?", (client_id,)).fetchone()
        return self._row_to_client(row) if row else None

    @_storage_op
    def get_client_by_ref(self, ref: str) -> Optional[Client]:
        row = (
            self._conn()
            .execute("SELECT * FROM clients WHERE ref=?", (ref.strip().upper(),))
            .fetchone()
        )
        return self._row_to_client(row) if row else None

    @_storage_op
    def list_clients(self) -> List[Client]:
        """Most recently used first; never-used clients last, by ref."""
        rows = (
            self._conn()
            .execute(
                """SELECT * FROM clients
                   ORDER BY last_used_at IS NULL, last_used_at DESC, ref ASC"""
            )
            .fetchall()
        )
        return [self._row_to_client(r) for r in rows]

    @_storage_op
    def list_dirty_clients(self) -> List[Client]:
        rows = self._conn().execute("SELECT * FROM clients WHERE dirty=1").fetchall()
        return [self._row_to_client(r) for r in rows]

    @_storage_op
    def delete_client(self, client_id: str) -> bool:
        conn = self._conn()
        cur = conn.execute("DELETE FROM clients WHERE id=?", (client_id,))
        if cur.rowcount == 0:
            return False
        self._enqueue(conn, client_id, "client", "delete")
        conn.commit()
        return True

    @_storage_op
    def purge_client(self, client_id: str) -> None:
        conn = self._conn()
        conn.execute("DELETE FROM clients WHERE id=?", (client_id,))
        conn.execute("DELETE FROM sync_queue WHERE entity_id=?", (client_id,))
        conn.commit()

    @_storage_op
    def mark_client_synced(self, client_id: str, synced_at: datetime, revision: int) -> bool:
        conn = self._conn()
        cur = conn.execute(
            "UPDATE clients SET dirty=0, synced_at=? WHERE id=? AND revision=?",
            (to_iso(synced_at), client_id, revision),
        )
        cleared = cur.rowcount > 0
        if cleared:
            conn.execute("DELETE FROM sync_queue WHERE entity_id=?", (client_id,))
        conn.commit()
        return cleared

    def _row_to_client(self, row: sqlite3.Row) -> Client:
        return Client(
            id=row["id"],
            ref=row["ref"],
            name=row["name"],
            tier=row["tier"],
            created_at=from_iso(row["created_at"]),
            last_used_at=from_iso(row["last_used_at"]),
            dirty=row["dirty"] in (1, "1", True),
            synced_at=from_iso(row["synced_at"]),
            revision=row["revision"] or 0,
        )

    # ── Attachments ───────────────────────────────────────────────────────

    @_storage_op
    def add_photo(self, p: Photo) -> None:
        conn = self._conn()
        conn.execute(
            """INSERT INTO photos (id, job_id, data, caption, created_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET caption=excluded.caption""",
            (p.id, p.job_id, p.data, p.caption, to_iso(p.created_at) or self._now()),
        )
        conn.commit()

    @_storage_op
    def photos_for_job(self, job_id: str) -> List[Photo]:
        rows = (
            self._conn()
            .execute(
                "SELECT * FROM photos WHERE job_id=? ORDER BY created_at", (job_id,)
            )
            .fetchall()
        )
        return [
            Photo(
                id=r["id"],
                job_id=r["job_id"],
                data=r["data"],
                caption=r["caption"] or "",
                created_at=from_iso(r["created_at"]),
            )
            for r in rows
        ]

    @_storage_op
    def delete_photo(self, photo_id: str) -> None:
        conn = self._conn()
        conn.execute("DELETE FROM photos WHERE id=?", (photo_id,))
        conn.commit()

    @_storage_op
    def put_voice_note(self, v: VoiceNote) -> None:
        conn = self._conn()
        conn.execute(
            """INSERT INTO voice_notes (id, job_id, audio, duration_sec, transcript, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 transcript=excluded.transcript, duration_sec=excluded.duration_sec""",
            (
                v.id,
                v.job_id,
                v.audio,
                v.duration_sec,
                v.transcript,
                to_iso(v.created_at) or self._now(),
            ),
        )
        conn.commit()

    @_storage_op
    def voice_notes_for_job(self, job_id: str) -> List[VoiceNote]:
        rows = (
            self._conn()
            .execute(
                "SELECT * FROM voice_notes WHERE job_id=? ORDER BY created_at", (job_id,)
            )
            .fetchall()
        )
        return [
            VoiceNote(
                id=r["id"],
                job_id=r["job_id"],
                audio=r["audio"],
                duration_sec=r["duration_sec"] or 0.0,
                transcript=r["transcript"],
                created_at=from_iso(r["created_at"]),
            )
            for r in rows
        ]

    @_storage_op
    def delete_voice_note(self, note_id: str) -> None:
        conn = self._conn()
        conn.execute("DELETE FROM voice_notes WHERE id=?", (note_id,))
        conn.commit()

    # ── Sync queue ────────────────────────────────────────────────────────

    @_storage_op
    def pending_changes(self, kind: Optional[str] = None) -> List[PendingChange]:
        conn = self._conn()
        if kind:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE kind=? ORDER BY queued_at", (kind,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM sync_queue ORDER BY queued_at").fetchall()
        return [
            PendingChange(
                entity_id=r["entity_id"],
                kind=r["kind"],
                op=r["op"],
                queued_at=r["queued_at"],
                attempts=r["attempts"] or 0,
                last_error=r["last_error"],
            )
            for r in rows
        ]

    @_storage_op
    def record_push_failure(self, entity_id: str, error: str) -> None:
        conn = self._conn()
        conn.execute(
            "UPDATE sync_queue SET attempts=attempts+1, last_error=? WHERE entity_id=?",
            (error[:2000], entity_id),
        )
        conn.commit()

    @_storage_op
    def unsynced_count(self) -> int:
        return self._conn().execute("SELECT COUNT(*) AS c FROM sync_queue").fetchone()["c"]

    # ── Watermarks ────────────────────────────────────────────────────────

    @_storage_op
    def get_watermark(self, user_id: str, table: str) -> datetime:
        row = (
            self._conn()
            .execute(
                "SELECT value FROM sync_state WHERE key=?",
                (f"watermark:{user_id}:{table}",),
            )
            .fetchone()
        )
        return from_iso(row["value"]) if row else EPOCH

    @_storage_op
    def advance_watermark(self, user_id: str, table: str, value: datetime) -> datetime:
        """Move the watermark forward; never backwards. Returns the stored value."""
        current = self.get_watermark(user_id, table)
        if value <= current:
            return current
        conn = self._conn()
        conn.execute(
            """INSERT INTO sync_state (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value=excluded.value""",
            (f"watermark:{user_id}:{table}", to_iso(value)),
        )
        conn.commit()
        return value

    # ── Stats ─────────────────────────────────────────────────────────────

    @_storage_op
    def stats(self) -> Dict[str, Any]:
        conn = self._conn()
        jobs = conn.execute(
            "SELECT COUNT(*) as c FROM jobs WHERE deleted_at IS NULL"
        ).fetchone()["c"]
        clients = conn.execute("SELECT COUNT(*) as c FROM clients").fetchone()["c"]
        photos = conn.execute("SELECT COUNT(*) as c FROM photos").fetchone()["c"]
        voice_notes = conn.execute("SELECT COUNT(*) as c FROM voice_notes").fetchone()["c"]
        unsynced = conn.execute("SELECT COUNT(*) as c FROM sync_queue").fetchone()["c"]

        db_size = self.db_path.stat().st_size if self.db_path.exists() else 0
        return {
            "db_path": str(self.db_path),
            "db_size_mb": round(db_size / (1024 * 1024), 2),
            "jobs": jobs,
            "clients": clients,
            "photos": photos,
            "voice_notes": voice_notes,
            "unsynced": unsynced,
        }


# ── Process accessor ──────────────────────────────────────────────────────────

_db_instances: Dict[str, LocalStore] = {}
_db_lock = threading.Lock()


def get_db() -> LocalStore:
    """Get or create the local store for the configured path (one per path)."""
    from .config import Config

    cfg = Config.load()
    key = str(cfg.resolved_db_path)

    with _db_lock:
        if key not in _db_instances:
            db = LocalStore(cfg.resolved_db_path)
            db.initialize()
            _db_instances[key] = db
        return _db_instances[key]
