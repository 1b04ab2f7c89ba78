"""
Decides whether an incoming remote version replaces
the local one.

Policy is last-write-wins on the server clock: the remote version wins iff
its ``updated_at`` is strictly newer than the local entity's last confirmed
sync. Equal timestamps never replace. Two offline devices editing the same
job resolve to whichever push the server stamped later; the other edit is
lost (reported as ConflictDiscarded, never merged field by field).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from ..core.clock import EPOCH
from ..core.models import Client, Job

Entity = Union[Job, Client]


class Action(str, Enum):
    INSERT = "insert"
    REPLACE = "replace"
    KEEP = "keep"


@dataclass(frozen=True)
class Resolution:
    action: Action
    reason: str
    discards_local_edit: bool = False

    @property
    def applies_remote(self) -> bool:
        return self.action in (Action.INSERT, Action.REPLACE)


class LastWriteWins:
    name = "last_write_wins"

    def resolve(self, local: Optional[Entity], remote_updated_at: datetime) -> Resolution:
        if local is None:
            return Resolution(Action.INSERT, "absent locally")

        if getattr(local, "deleted_at", None) is not None:
            return Resolution(Action.KEEP, "local delete pending")

        last_synced = local.synced_at or EPOCH
        if remote_updated_at > last_synced:
            return Resolution(
                Action.REPLACE,
                "remote newer than last confirmed sync",
                discards_local_edit=local.dirty,
            )
        return Resolution(Action.KEEP, "remote not newer than last confirmed sync")
