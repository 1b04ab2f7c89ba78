"""
Typed change notifications and an in-process observer.

Listeners subscribe to notification classes rather than string topics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    pass


@dataclass(frozen=True)
class JobsUpdated(Notification):
    job_ids: Tuple[str, ...]


@dataclass(frozen=True)
class ClientsUpdated(Notification):
    client_ids: Tuple[str, ...]


@dataclass(frozen=True)
class SyncError(Notification):
    operation: str  # "push" | "pull" | "realtime" | "broadcast"
    message: str


@dataclass(frozen=True)
class ConflictDiscarded(Notification):
    """An edit lost to a newer write under last-write-wins. Informational."""

    table: str
    entity_id: str
    kept: str  # "local" | "remote"
    discarded_updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class SyncStateChanged(Notification):
    previous: str
    current: str


@dataclass(frozen=True)
class PeerSyncRequested(Notification):
    user_id: str


@dataclass(frozen=True)
class ChannelDegraded(Notification):
    reason: str


Listener = Callable[[Notification], None]


class EventBus:
    """Synchronous fan-out to subscribed listeners."""

    def __init__(self) -> None:
        self._subscribers: List[Tuple[Tuple[Type[Notification], ...], Listener]] = []

    def subscribe(self, listener: Listener, *kinds: Type[Notification]) -> Callable[[], None]:
        """Subscribe to the given notification classes (all when none given).

        Returns a callable that removes the subscription.
        """
        entry = (kinds or (Notification,), listener)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def emit(self, event: Notification) -> None:
        for kinds, listener in list(self._subscribers):
            if not isinstance(event, kinds):
                continue
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener {listener!r} failed for {type(event).__name__}: {e}")
