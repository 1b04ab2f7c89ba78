"""
Remote store client.

RemoteStore is the contract the sync engine talks to; RestRemoteStore
implements it over a PostgREST-style HTTP API with aiohttp. Every call is
a suspension point and every transport problem surfaces as NetworkError.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp

from ..core.clock import to_iso
from ..core.errors import NetworkError

logger = logging.getLogger(__name__)

BROADCAST_TOPIC = "sync-broadcast"


class RemoteStore:
    """Generic remote relational store with server-maintained ``updated_at``."""

    async def upsert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Idempotent insert-or-update keyed by id. Returns the stored row."""
        raise NotImplementedError

    async def fetch_since(
        self, table: str, user_id: str, since: datetime
    ) -> List[Dict[str, Any]]:
        """Rows for ``user_id`` with ``updated_at > since``, oldest first."""
        raise NotImplementedError

    async def delete(self, table: str, entity_id: str) -> None:
        """Delete by id. Deleting a missing row is not an error."""
        raise NotImplementedError

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class RestRemoteStore(RemoteStore):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def __aenter__(self) -> RestRemoteStore:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            async with self._http().request(
                method, url, params=params, json=json_body, headers=headers
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise NetworkError(
                        f"{method} {path} -> {response.status}: {text[:200]}",
                        status=response.status,
                    )
                if response.status == 204:
                    return None
                if response.content_type == "application/json":
                    return await response.json()
                return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

    async def upsert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": "id"},
            json_body=row,
            prefer="resolution=merge-duplicates,return=representation",
        )
        if isinstance(data, list) and data:
            return data[0]
        if isinstance(data, dict):
            return data
        raise NetworkError(f"Upsert into {table} returned no row")

    async def fetch_since(
        self, table: str, user_id: str, since: datetime
    ) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/rest/v1/{table}",
            params={
                "select": "*",
                "user_id": f"eq.{user_id}",
                "updated_at": f"gt.{to_iso(since)}",
                "order": "updated_at.asc",
            },
        )
        return list(data or [])

    async def delete(self, table: str, entity_id: str) -> None:
        await self._request(
            "DELETE", f"/rest/v1/{table}", params={"id": f"eq.{entity_id}"}
        )

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        await self._request(
            "POST",
            "/realtime/v1/api/broadcast",
            json_body={
                "messages": [
                    {"topic": BROADCAST_TOPIC, "event": event, "payload": payload}
                ]
            },
        )
