"""
Push-based change feed over a websocket.

Forwards insert/update/delete events for the current user's rows to the
sync engine. It never reconnects on its own: when the socket drops it
reports itself degraded and the engine's periodic poll carries on.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .remote import BROADCAST_TOPIC
from .wire import TABLES, ChangeEvent, parse_change_event

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]
BroadcastHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]
DegradedHandler = Callable[[str], None]


class ChangeFeed:
    """Contract for push delivery of remote changes."""

    connected: bool = False

    async def subscribe(
        self,
        user_id: str,
        on_change: ChangeHandler,
        on_broadcast: BroadcastHandler,
        on_degraded: DegradedHandler,
    ) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class RealtimeChannel(ChangeFeed):
    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        heartbeat: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self.connected = False

        self.user_id: Optional[str] = None
        self._on_change: Optional[ChangeHandler] = None
        self._on_broadcast: Optional[BroadcastHandler] = None
        self._on_degraded: Optional[DegradedHandler] = None

    async def subscribe(
        self,
        user_id: str,
        on_change: ChangeHandler,
        on_broadcast: BroadcastHandler,
        on_degraded: DegradedHandler,
    ) -> None:
        self.user_id = user_id
        self._on_change = on_change
        self._on_broadcast = on_broadcast
        self._on_degraded = on_degraded
        self._closing = False

        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        try:
            self._ws = await self._session.ws_connect(
                self.url, params={"apikey": self.api_key}, heartbeat=self.heartbeat
            )
            await self._ws.send_json(
                {
                    "type": "subscribe",
                    "tables": list(TABLES),
                    "filter": {"user_id": user_id},
                    "broadcast": BROADCAST_TOPIC,
                }
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._degrade(f"connect failed: {e}")
            return

        self.connected = True
        self._reader = asyncio.create_task(self._read_loop(), name="realtime-reader")
        logger.info(f"Realtime channel subscribed for user {user_id}")

    async def close(self) -> None:
        self._closing = True
        self.connected = False
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _read_loop(self) -> None:
        reason = "closed by server"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self.dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"socket error: {self._ws.exception()}"
                    break
        except aiohttp.ClientError as e:
            reason = f"transport error: {e}"
        if not self._closing:
            self._degrade(reason)

    async def dispatch(self, raw: str) -> None:
        """Route one wire message to the engine."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Realtime: dropping non-JSON message: {raw[:120]!r}")
            return
        if not isinstance(message, dict):
            return

        if message.get("type") == "broadcast":
            if self._on_broadcast is not None:
                await self._on_broadcast(
                    str(message.get("event", "")), message.get("payload") or {}
                )
            return
        if message.get("type") in ("ack", "heartbeat", "presence"):
            return

        try:
            event = parse_change_event(message)
        except ValueError as e:
            logger.warning(f"Realtime: malformed change event: {e}")
            return

        owner = event.row.get("user_id")
        if owner is not None and owner != self.user_id:
            logger.debug(f"Realtime: ignoring row {event.entity_id} of another user")
            return

        if self._on_change is not None:
            await self._on_change(event)

    def _degrade(self, reason: str) -> None:
        self.connected = False
        logger.warning(f"Realtime channel degraded ({reason}); relying on polling")
        if self._on_degraded is not None:
            self._on_degraded(reason)
