"""In-memory registry of running extraction workers, keyed by mission id.

One :class:`MissionRegistry` is owned by one
:class:`~ad_observatory.workers.supervisor.MissionSupervisor`; there is no
module-level registry.  Registering a second worker for a mission id that is
already active raises :class:`~ad_observatory.core.exceptions.DuplicateWorkerError`.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from ad_observatory.core.exceptions import DuplicateWorkerError
from ad_observatory.core.models import utcnow
from ad_observatory.core.schemas import MissionRead

if TYPE_CHECKING:
    from ad_observatory.workers.launcher import WorkerHandle


@dataclass
class ActiveWorker:
    """A running mission and the live counters observed on its progress channel."""

    mission: MissionRead
    handle: "WorkerHandle"
    found: int = 0
    new_records: int = 0
    duplicates_skipped: int = 0
    processed: int = 0
    updated_at: datetime = field(default_factory=utcnow)
    monitor: Optional[asyncio.Task] = None

    @property
    def mission_id(self) -> uuid.UUID:
        return self.mission.id

    @property
    def owner_id(self) -> str:
        return self.mission.owner_id

    def apply(self, deltas: dict[str, int]) -> None:
        for name, delta in deltas.items():
            setattr(self, name, getattr(self, name) + delta)
        self.updated_at = utcnow()

    def counters(self) -> dict[str, int]:
        return {
            "found": self.found,
            "new_records": self.new_records,
            "duplicates_skipped": self.duplicates_skipped,
            "processed": self.processed,
        }


class MissionRegistry:
    """Active workers by mission id."""

    def __init__(self) -> None:
        self._workers: dict[uuid.UUID, ActiveWorker] = {}

    def __len__(self) -> int:
        return len(self._workers)

    def __contains__(self, mission_id: object) -> bool:
        return mission_id in self._workers

    def __iter__(self) -> Iterator[ActiveWorker]:
        return iter(list(self._workers.values()))

    def register(self, worker: ActiveWorker) -> None:
        if worker.mission_id in self._workers:
            raise DuplicateWorkerError(
                f"Mission '{worker.mission_id}' already has an active worker",
                mission_id=str(worker.mission_id),
            )
        self._workers[worker.mission_id] = worker

    def get(self, mission_id: uuid.UUID) -> Optional[ActiveWorker]:
        return self._workers.get(mission_id)

    def remove(self, mission_id: uuid.UUID) -> Optional[ActiveWorker]:
        return self._workers.pop(mission_id, None)

    def for_owner(self, owner_id: str) -> list[ActiveWorker]:
        return [w for w in self._workers.values() if w.owner_id == owner_id]
