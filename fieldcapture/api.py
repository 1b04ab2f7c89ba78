"""
FieldCapture API — clean, importable functions for all operations.

Every function returns JSON-serializable dicts/lists. Validation and
storage failures come back as ``{"error": ...}`` rather than raising.
"""

from __future__ import annotations

import functools
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .core.errors import FieldCaptureError


def init() -> Dict[str, Any]:
    """Initialize FieldCapture: create config dir, default config, database and starter clients."""
    from .core.config import Config, config_path

    cfg_path = config_path()
    results: Dict[str, Any] = {"created": [], "existing": []}

    # 1. Create parent dir
    config_dir = cfg_path.parent
    if config_dir.exists():
        results["existing"].append(str(config_dir))
    else:
        config_dir.mkdir(parents=True)
        results["created"].append(str(config_dir))

    # 2. Write default config.yaml (skip if exists)
    if cfg_path.exists():
        results["existing"].append(str(cfg_path))
    else:
        cfg_path.write_text(_DEFAULT_CONFIG_TEMPLATE)
        results["created"].append(str(cfg_path))

    # 3. Initialize database and seed clients on first run
    db_path = Config.load().resolved_db_path
    if db_path.exists():
        results["existing"].append(str(db_path))
    else:
        _, _, clients = _services()
        seeded = clients.seed_defaults()
        results["created"].append(str(db_path))
        results["seeded_clients"] = [c.ref for c in seeded]

    return results


def setup_config(key: str, value: str) -> Dict[str, str]:
    """Set a config key-value pair."""
    from .core.config import Config
    Config.set_config(key, value)
    return {"key": key, "value": value, "status": "ok"}


_DEFAULT_CONFIG_TEMPLATE = """\
# FieldCapture configuration

# ── Remote store ─────────────────────────────────────────
# REST base URL of the hosted database (PostgREST-style API).
# The realtime websocket URL is derived from it unless set explicitly.
remote_url: ""
# realtime_url: "wss://example.invalid/realtime/v1/websocket"

# API key sent with every request.
# Alternatively: export FIELDCAPTURE_API_KEY
api_key: ""

# Signed-in user id (rows are scoped to it).
user_id: ""

# ── Sync cadence (seconds) ───────────────────────────────
poll_interval: 30
sync_debounce: 5
request_timeout: 10

# ── Local store ──────────────────────────────────────────
# db_path: "~/.fieldcapture/db/fieldcapture.db"

log_level: "WARNING"
"""


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _serialize(obj: Any) -> Any:
    """Convert dataclass to dict."""
    if hasattr(obj, "__dataclass_fields__"):
        return _plain(asdict(obj))
    return _plain(obj)


def _job_view(job) -> Dict[str, Any]:
    from .work.sessions import format_duration
    data = _serialize(job)
    data["priority_label"] = job.priority_label
    data["total_display"] = format_duration(job.total_duration_min)
    data["running"] = job.open_session is not None
    return data


def _api_errors(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except FieldCaptureError as e:
            return {"error": str(e)}

    return wrapper


def _services():
    from .core.db import get_db
    from .sync.events import EventBus
    from .work.clients import ClientService
    from .work.jobs import JobService

    store = get_db()
    bus = EventBus()
    return (
        store,
        JobService(store, bus=bus),
        ClientService(store, bus=bus),
    )


def _resolve_job_id(store, job_id: str) -> str:
    """Accept a full id or a unique prefix (as printed by ``fc jobs``)."""
    if store.get_job(job_id):
        return job_id
    matches = [j.id for j in store.list_jobs() if j.id.startswith(job_id)]
    if len(matches) == 1:
        return matches[0]
    return job_id


# ── Status ────────────────────────────────────────────────────────────────────

@_api_errors
def status() -> Dict[str, Any]:
    """Local store stats and remote configuration check."""
    from .core.config import Config
    cfg = Config.load()

    result: Dict[str, Any] = {
        "remote_url": cfg.remote_url,
        "user_id": cfg.user_id,
    }

    remote_err = cfg.check_remote()
    result["remote_ok"] = remote_err is None
    if remote_err:
        result["remote_error"] = remote_err

    if not cfg.resolved_db_path.exists():
        result["db_path"] = str(cfg.resolved_db_path)
        result["db_error"] = "Database not initialized. Run: fc init"
        return result

    store, _, _ = _services()
    result.update(store.stats())
    return result


# ── Clients ───────────────────────────────────────────────────────────────────

@_api_errors
def clients() -> List[Dict[str, Any]]:
    """List clients, most recently used first."""
    _, _, svc = _services()
    return [_serialize(c) for c in svc.list_clients()]


@_api_errors
def client_add(ref: str, name: str, *, tier: Optional[str] = None) -> Dict[str, Any]:
    _, _, svc = _services()
    return _serialize(svc.add_client(ref, name, tier=tier))


@_api_errors
def client_rename(
    old_ref: str, new_ref: Optional[str] = None, *, name: Optional[str] = None
) -> Dict[str, Any]:
    store, _, svc = _services()
    client = svc.rename_client(old_ref, new_ref=new_ref, name=name)
    return {
        "client": _serialize(client),
        "jobs": len(store.jobs_by_client(client.ref)),
    }


@_api_errors
def client_delete(ref: str) -> Dict[str, Any]:
    _, _, svc = _services()
    svc.delete_client(ref)
    return {"deleted": ref.strip().upper()}


# ── Jobs ──────────────────────────────────────────────────────────────────────

@_api_errors
def jobs() -> Dict[str, Any]:
    """List jobs, newest first."""
    _, svc, _ = _services()
    items = svc.list_jobs()
    return {
        "jobs": [_job_view(j) for j in items],
        "total": len(items),
    }


@_api_errors
def job_new(
    client_ref: str,
    notes: str = "",
    *,
    priority: Optional[int] = None,
    location: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a job; a ``P1``..``P5`` hint in the notes sets the priority."""
    from .core.models import DEFAULT_PRIORITY, LOCATION_ONSITE
    from .work.hottext import parse_hot_text

    hint = parse_hot_text(notes)
    _, svc, _ = _services()
    job = svc.create_job(
        client_ref.strip().upper(),
        notes=notes,
        priority=priority or hint.priority or DEFAULT_PRIORITY,
        location=location or LOCATION_ONSITE,
    )
    result = _job_view(job)
    if hint.due:
        result["due"] = hint.due.isoformat()
    return result


@_api_errors
def show(job_id: str) -> Dict[str, Any]:
    """Show a job with its photos and voice notes."""
    store, svc, _ = _services()
    data = svc.get_with_media(_resolve_job_id(store, job_id))
    return {
        "job": _job_view(data["job"]),
        "photos": [_serialize(p) for p in data["photos"]],
        "voice_notes": [_serialize(v) for v in data["voice_notes"]],
    }


@_api_errors
def start(job_id: str) -> Dict[str, Any]:
    store, svc, _ = _services()
    return _job_view(svc.start_timer(_resolve_job_id(store, job_id)))


@_api_errors
def stop(job_id: str) -> Dict[str, Any]:
    store, svc, _ = _services()
    return _job_view(svc.stop_timer(_resolve_job_id(store, job_id)))


@_api_errors
def note(job_id: str, text: str) -> Dict[str, Any]:
    store, svc, _ = _services()
    return _job_view(svc.update_job(_resolve_job_id(store, job_id), notes=text))


@_api_errors
def done(job_id: str) -> Dict[str, Any]:
    store, svc, _ = _services()
    return _job_view(svc.toggle_completed(_resolve_job_id(store, job_id)))


@_api_errors
def delete(job_id: str) -> Dict[str, Any]:
    store, svc, _ = _services()
    resolved = _resolve_job_id(store, job_id)
    svc.delete_job(resolved)
    return {"deleted": resolved, "unsynced": store.unsynced_count()}


# ── Sync ─────────────────────────────────────────────────────────────────────

@_api_errors
def sync() -> Dict[str, Any]:
    """Push local changes, pull remote ones and nudge other devices.

    Network failures do not raise: they are collected under ``errors``
    and the local data stays as it was.
    """
    import asyncio

    from .sync.events import EventBus, SyncError
    from .worker import sync_once

    bus = EventBus()
    errors: List[Dict[str, str]] = []
    bus.subscribe(lambda e: errors.append({"operation": e.operation, "error": e.message}), SyncError)

    result = asyncio.run(sync_once(bus=bus))
    result["errors"] = errors
    return result
