"""Periodic health and recovery checks for the scheduling service.

Two cancelable asyncio tasks:

- the **health** loop logs process memory and job counts every
  ``health_check_interval_seconds`` and warns above
  ``high_memory_threshold_mb``;
- the **recovery** loop runs every ``recovery_check_interval_seconds``, flags
  active schedules whose ``next_run`` is more than ``recovery_grace_seconds``
  in the past and not currently executing, and pings the store.

Both only log.  Neither re-arms, deletes nor restarts anything.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Callable, Collection
from datetime import datetime, timedelta
from typing import Any, Optional

import psutil
import structlog

from ad_observatory.config.settings import Settings
from ad_observatory.core.models import utcnow
from ad_observatory.core.persistence import AsyncPersistenceGateway, PersistenceGateway, as_async_gateway
from ad_observatory.core.schemas import SchedulerRead

logger = structlog.get_logger(__name__)


def process_memory_mb() -> float:
    """Resident memory of this process in MiB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


class HealthMonitor:
    """Owns the health and recovery loops.

    Args:
        gateway: Store to read schedules from and to ping.
        settings: Intervals and thresholds.
        active_jobs: Returns the number of live cron jobs.
        running_executions: Returns the number of executions in flight.
        in_flight: Returns the ids of schedules executing right now.  Their
            ``next_run`` stays in the past until the run is recorded, so
            they are not flagged.
    """

    def __init__(
        self,
        gateway: PersistenceGateway | AsyncPersistenceGateway,
        settings: Settings,
        active_jobs: Callable[[], int],
        running_executions: Callable[[], int],
        in_flight: Optional[Callable[[], Collection[uuid.UUID]]] = None,
    ) -> None:
        self._gateway = as_async_gateway(gateway)
        self._in_flight = in_flight or (lambda: ())
        self._settings = settings
        self._active_jobs = active_jobs
        self._running_executions = running_executions
        self._tasks: list[asyncio.Task] = []

    def check_health(self) -> dict[str, Any]:
        memory_mb = process_memory_mb()
        snapshot = {
            "memory_mb": round(memory_mb, 1),
            "active_jobs": self._active_jobs(),
            "running_executions": self._running_executions(),
        }
        if memory_mb > self._settings.high_memory_threshold_mb:
            logger.warning(
                "health: high memory usage",
                threshold_mb=self._settings.high_memory_threshold_mb,
                **snapshot,
            )
        else:
            logger.info("health: ok", **snapshot)
        return snapshot

    async def check_overdue(self, now: Optional[datetime] = None) -> list[SchedulerRead]:
        """Return idle active schedules that missed their expected run, logging each."""
        now = now or utcnow()
        grace = timedelta(seconds=self._settings.recovery_grace_seconds)
        executing = set(self._in_flight())
        overdue = [
            s
            for s in await self._gateway.list_active_schedules()
            if s.next_run is not None and s.next_run + grace < now and s.id not in executing
        ]
        for schedule in overdue:
            logger.warning(
                "recovery: schedule overdue",
                schedule_id=str(schedule.id),
                keyword=schedule.keyword,
                next_run=schedule.next_run.isoformat(),
                last_run=schedule.last_run.isoformat() if schedule.last_run else None,
            )
        if not await self._gateway.ping():
            logger.error("recovery: store unreachable")
        logger.info("recovery: pass complete", overdue=len(overdue))
        return overdue

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _loop(self, name: str, interval: float, check: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = check()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                logger.error(f"{name}: check failed", error=str(exc), exc_info=True)

    def start(self) -> None:
        if self._tasks:
            return
        s = self._settings
        self._tasks = [
            asyncio.create_task(
                self._loop("health", s.health_check_interval_seconds, self.check_health),
                name="health-monitor",
            ),
            asyncio.create_task(
                self._loop("recovery", s.recovery_check_interval_seconds, self.check_overdue),
                name="recovery-monitor",
            ),
        ]
        logger.info(
            "health: monitors started",
            health_interval=s.health_check_interval_seconds,
            recovery_interval=s.recovery_check_interval_seconds,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def running(self) -> bool:
        return bool(self._tasks)
