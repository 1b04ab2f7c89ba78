"""
Client commands: reference-code uniqueness and rename cascades.
"""

from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from ..core.clock import Clock
from ..core.db import LocalStore
from ..core.errors import ValidationError
from ..core.models import Client
from ..sync.events import ClientsUpdated, EventBus, JobsUpdated

logger = logging.getLogger(__name__)

DEFAULT_CLIENTS = [
    ("CLIENT001", "ABC Plumbing"),
    ("CLIENT002", "Smith Electrical"),
    ("CLIENT003", "Jones Construction"),
]


def normalize_ref(ref: str) -> str:
    normalized = (ref or "").strip().upper()
    if not normalized:
        raise ValidationError("Client reference is required")
    return normalized


class ClientService:
    def __init__(
        self,
        store: LocalStore,
        *,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.clock = clock or store.clock
        self.bus = bus or EventBus()

    def list_clients(self) -> List[Client]:
        return self.store.list_clients()

    def get_client(self, ref: str) -> Client:
        client = self.store.get_client_by_ref(normalize_ref(ref))
        if client is None:
            raise ValidationError(f"Client not found: {ref}")
        return client

    def add_client(self, ref: str, name: str, *, tier: Optional[str] = None) -> Client:
        ref = normalize_ref(ref)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Client name is required")
        if self.store.get_client_by_ref(ref) is not None:
            raise ValidationError(f"Client reference already exists: {ref}")

        client = Client(
            id=str(uuid.uuid4()),
            ref=ref,
            name=name,
            tier=tier,
            created_at=self.clock.now(),
        )
        self.store.put_client(client)
        self.bus.emit(ClientsUpdated(client_ids=(client.id,)))
        return client

    def rename_client(
        self,
        old_ref: str,
        *,
        new_ref: Optional[str] = None,
        name: Optional[str] = None,
        tier: Optional[str] = None,
    ) -> Client:
        """Change a client's reference code and/or name.

        Every job pointing at the old reference is rewritten to the new
        reference and name and re-marked dirty.
        """
        client = self.get_client(old_ref)
        target_ref = normalize_ref(new_ref) if new_ref else client.ref
        target_name = name.strip() if name and name.strip() else client.name

        if target_ref != client.ref:
            clash = self.store.get_client_by_ref(target_ref)
            if clash is not None and clash.id != client.id:
                raise ValidationError(f"Client reference already exists: {target_ref}")

        previous_ref = client.ref
        changed = target_ref != previous_ref or target_name != client.name
        client.ref = target_ref
        client.name = target_name
        if tier is not None:
            client.tier = tier
            changed = True
        if not changed:
            return client

        client.dirty = True
        self.store.put_client(client)

        rewritten = []
        for job in self.store.jobs_by_client(previous_ref):
            job.client_ref = target_ref
            job.client_name = target_name
            job.dirty = True
            self.store.put_job(job)
            rewritten.append(job.id)

        if previous_ref != target_ref:
            logger.info(
                f"Renamed client {previous_ref} -> {target_ref}, "
                f"rewrote {len(rewritten)} jobs"
            )
        self.bus.emit(ClientsUpdated(client_ids=(client.id,)))
        if rewritten:
            self.bus.emit(JobsUpdated(job_ids=tuple(rewritten)))
        return client

    def delete_client(self, ref: str) -> None:
        """Remove the client record; jobs keep their denormalized copy."""
        client = self.get_client(ref)
        self.store.delete_client(client.id)
        self.bus.emit(ClientsUpdated(client_ids=(client.id,)))

    def touch_client(self, ref: str) -> Client:
        client = self.get_client(ref)
        client.last_used_at = self.clock.now()
        self.store.put_client(client)
        return client

    def seed_defaults(self) -> List[Client]:
        """Insert the starter clients, only into an empty client list."""
        if self.store.list_clients():
            return []
        return [self.add_client(ref, name) for ref, name in DEFAULT_CLIENTS]
