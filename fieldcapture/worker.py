"""
Background worker — runs the sync engine against the configured remote.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .core.config import Config
from .core.db import LocalStore, get_db
from .core.errors import ValidationError
from .sync.engine import SyncEngine
from .sync.events import EventBus
from .sync.realtime import RealtimeChannel
from .sync.remote import RestRemoteStore

logger = logging.getLogger(__name__)


def _require_remote(cfg: Config) -> str:
    err = cfg.check_remote()
    if err:
        raise ValidationError(err)
    if not cfg.user_id:
        raise ValidationError(
            "No user: set 'user_id' in config.yaml or export FIELDCAPTURE_USER_ID"
        )
    return cfg.user_id


def build_engine(
    cfg: Config,
    *,
    store: Optional[LocalStore] = None,
    bus: Optional[EventBus] = None,
    realtime: bool = True,
) -> SyncEngine:
    """Wire a SyncEngine to the REST remote (and websocket feed if wanted)."""
    store = store or get_db()
    remote = RestRemoteStore(cfg.remote_url, cfg.api_key, timeout=cfg.request_timeout)
    feed = None
    if realtime and cfg.resolved_realtime_url:
        feed = RealtimeChannel(cfg.resolved_realtime_url, cfg.api_key)
    return SyncEngine(
        store,
        remote,
        feed=feed,
        bus=bus,
        poll_interval=cfg.poll_interval,
        debounce=cfg.sync_debounce,
    )


async def sync_once(
    *,
    cfg: Optional[Config] = None,
    store: Optional[LocalStore] = None,
    bus: Optional[EventBus] = None,
) -> Dict[str, Any]:
    """One forced push + pull round, then shut down."""
    cfg = cfg or Config.load()
    user_id = _require_remote(cfg)
    engine = build_engine(cfg, store=store, bus=bus, realtime=False)
    try:
        await engine.init(user_id, poll=False)
        result = await engine.force_sync()
        await engine.drain()
        result["unsynced"] = engine.unsynced_count()
        return result
    finally:
        await engine.dispose()
        await engine.remote.close()


async def watch(
    *,
    cfg: Optional[Config] = None,
    store: Optional[LocalStore] = None,
    bus: Optional[EventBus] = None,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """Keep syncing (realtime + poll) until ``stop`` is set or cancelled."""
    cfg = cfg or Config.load()
    user_id = _require_remote(cfg)
    engine = build_engine(cfg, store=store, bus=bus)
    stop = stop or asyncio.Event()
    try:
        await engine.init(user_id)
        await engine.sync_to_server()
        logger.info(f"Watching for changes every {cfg.poll_interval:g}s")
        await stop.wait()
    finally:
        await engine.dispose()
        await engine.remote.close()
