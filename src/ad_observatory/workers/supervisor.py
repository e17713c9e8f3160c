"""Mission supervisor: owns each mission's lifecycle from creation to terminal status.

For every mission the supervisor:

1. validates limits and applies automatic resume;
2. persists the mission as ``running`` and launches one worker;
3. registers the worker in its :class:`~ad_observatory.workers.registry.MissionRegistry`
   and starts a monitor task that applies progress events as atomic counter
   increments;
4. when the worker exits, reconciles the incremental counters with the
   worker's summary (the larger value wins for each counter) and writes the
   terminal status mapped from the exit disposition.

``stop`` and ``fail`` write the terminal status *before* terminating the
worker, so the recorded status is correct even if termination is slow or
fails.  A worker failure never propagates out of the monitor task.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ad_observatory.config.settings import Settings, get_settings
from ad_observatory.core.exceptions import (
    AdObservatoryError,
    MissionNotFoundError,
    OwnershipError,
    PersistenceError,
)
from ad_observatory.core.logging_config import mission_id_var
from ad_observatory.core.models import (
    MISSION_COMPLETED,
    MISSION_FAILED,
    MISSION_STOPPED,
    TERMINAL_STATUSES,
)
from ad_observatory.core.persistence import AsyncPersistenceGateway, PersistenceGateway, as_async_gateway
from ad_observatory.core.schemas import (
    ActiveMission,
    ExtractionSummary,
    FilterSet,
    MissionLimits,
    MissionRead,
    MissionStatusReport,
    ProgressEvent,
    ProgressKind,
    WorkerInvocation,
)
from ad_observatory.workers.launcher import ExitDisposition, WorkerExit, WorkerLauncher
from ad_observatory.workers.registry import ActiveWorker, MissionRegistry

logger = structlog.get_logger(__name__)

_STATUS_BY_DISPOSITION: dict[ExitDisposition, str] = {
    ExitDisposition.NORMAL: MISSION_COMPLETED,
    ExitDisposition.KILLED: MISSION_STOPPED,
    ExitDisposition.ERROR: MISSION_FAILED,
}

_FINALIZE_ATTEMPTS = 3

_EVENT_DELTAS: dict[ProgressKind, dict[str, int]] = {
    ProgressKind.RECORD_SAVED: {"found": 1, "new_records": 1, "processed": 1},
    ProgressKind.DUPLICATE_SKIPPED: {"found": 1, "duplicates_skipped": 1, "processed": 1},
}


def reconcile_counters(observed: dict[str, int], summary: Optional[ExtractionSummary]) -> dict[str, int]:
    """Merge incremental counters with a worker summary, keeping the larger of each."""
    if summary is None:
        return dict(observed)
    reported = {
        "found": summary.found,
        "new_records": summary.saved,
        "duplicates_skipped": summary.duplicates,
        "processed": summary.processed,
    }
    return {name: max(observed.get(name, 0), reported[name]) for name in reported}


class MissionSupervisor:
    """Creates, monitors, stops and finalizes missions.

    Args:
        gateway: Mission and record store.  A synchronous gateway is wrapped
            so that store calls run off the event loop.
        launcher: Starts one worker per mission.
        settings: Application settings; :func:`get_settings` by default.
        registry: Registry of active workers; a fresh one by default.
    """

    def __init__(
        self,
        gateway: PersistenceGateway | AsyncPersistenceGateway,
        launcher: WorkerLauncher,
        settings: Optional[Settings] = None,
        registry: Optional[MissionRegistry] = None,
    ) -> None:
        self._gateway = as_async_gateway(gateway)
        self._launcher = launcher
        self._settings = settings or get_settings()
        self.registry = registry if registry is not None else MissionRegistry()
        self._done: dict[uuid.UUID, asyncio.Future[MissionRead]] = {}

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def _resume_cutoff(self, owner_id: str, keyword: str):
        try:
            return await self._gateway.oldest_start_date(owner_id, keyword)
        except Exception as exc:  # noqa: BLE001
            logger.warning("supervisor: auto-resume lookup failed", keyword=keyword, error=str(exc))
            return None

    async def create(
        self,
        keyword: str,
        owner_id: str,
        limits: Optional[MissionLimits] = None,
        filters: Optional[FilterSet] = None,
        execution_id: Optional[str] = None,
    ) -> MissionRead:
        """Persist a running mission and launch its worker.

        When *filters* carry no date range, the oldest known ad start date for
        this owner and keyword becomes the end date and the worker's resume
        cutoff.

        Returns:
            The mission as persisted.  If the worker cannot be launched the
            returned mission is already ``failed``.

        Raises:
            InvalidLimitsError: If a limit is out of range; nothing is persisted.
        """
        s = self._settings
        resolved = (limits or MissionLimits()).resolve(
            s.default_max_records, s.default_daily_quota, s.max_limit
        )
        filters = filters.model_copy(deep=True) if filters is not None else FilterSet()
        resume_date = None
        if not filters.has_date_range:
            resume_date = await self._resume_cutoff(owner_id, keyword)
            if resume_date is not None:
                filters.end_date = resume_date
                logger.info("supervisor: auto-resume", keyword=keyword, end_date=resume_date.isoformat())

        mission = await self._gateway.create_mission(
            keyword,
            owner_id,
            resolved,
            source=s.source_tag,
            region=filters.region or s.default_region,
            execution_id=execution_id,
        )
        log = logger.bind(mission_id=str(mission.id), keyword=keyword, owner_id=owner_id)
        invocation = WorkerInvocation(
            keyword=keyword,
            max_records=resolved.max_records,
            daily_quota=resolved.daily_quota,
            filters=filters,
            mission_id=mission.id,
            owner_id=owner_id,
            resume_date=resume_date,
        )
        try:
            handle = await self._launcher.launch(invocation)
        except Exception as exc:  # noqa: BLE001
            log.error("supervisor: worker launch failed", error=str(exc), exc_info=True)
            await self._gateway.finalize_mission(mission.id, MISSION_FAILED, error=f"launch failed: {exc}")
            return await self._gateway.get_mission(mission.id) or mission

        worker = ActiveWorker(mission=mission, handle=handle)
        self.registry.register(worker)
        self._done[mission.id] = asyncio.get_running_loop().create_future()
        worker.monitor = asyncio.create_task(self._monitor(worker), name=f"mission-{mission.id}")
        log.info(
            "supervisor: mission created",
            max_records=resolved.max_records,
            daily_quota=resolved.daily_quota,
        )
        return mission

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def _monitor(self, worker: ActiveWorker) -> None:
        mission_id_var.set(str(worker.mission_id))
        summary: Optional[ExtractionSummary] = None
        try:
            async for item in worker.handle.events():
                if isinstance(item, ExtractionSummary):
                    summary = item
                else:
                    await self._apply_event(worker, item)
            exit_info = await worker.handle.wait()
        except asyncio.CancelledError:
            await worker.handle.terminate()
            exit_info = WorkerExit(ExitDisposition.KILLED)
        except Exception as exc:  # noqa: BLE001
            logger.error("supervisor: monitor failed", error=str(exc), exc_info=True)
            await worker.handle.terminate()
            exit_info = WorkerExit(ExitDisposition.ERROR, error=f"monitor failed: {exc}")
        await self._finalize(worker, exit_info, summary)

    async def _apply_event(self, worker: ActiveWorker, event: ProgressEvent) -> None:
        if worker.mission_id not in self.registry:
            return
        deltas = _EVENT_DELTAS[event.kind]
        worker.apply(deltas)
        try:
            await self._gateway.increment_mission_counters(worker.mission_id, **deltas)
        except (AdObservatoryError, SQLAlchemyError) as exc:
            logger.warning("supervisor: counter update failed", error=str(exc))

    async def _write_final_status(
        self, mission_id: uuid.UUID, status: str, counters: dict[str, int], error: Optional[str]
    ) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(_FINALIZE_ATTEMPTS),
            wait=wait_exponential(multiplier=0.1, min=0),
            retry=retry_if_exception_type((PersistenceError, SQLAlchemyError)),
            reraise=True,
        ):
            with attempt:
                await self._gateway.finalize_mission(mission_id, status, counters=counters, error=error)

    async def _finalize(
        self, worker: ActiveWorker, exit_info: WorkerExit, summary: Optional[ExtractionSummary]
    ) -> None:
        """Write the terminal status, then resolve the mission's waiters.

        Waiters are always released: with the final record, or with a
        :class:`PersistenceError` when the terminal status could not be written.
        """
        mission_id = worker.mission_id
        status = _STATUS_BY_DISPOSITION[exit_info.disposition]
        failure: Optional[BaseException] = None
        final = worker.mission
        try:
            if self.registry.remove(mission_id) is not None:
                counters = reconcile_counters(worker.counters(), summary)
                try:
                    await self._write_final_status(
                        mission_id,
                        status,
                        counters,
                        exit_info.error if status == MISSION_FAILED else None,
                    )
                except (AdObservatoryError, SQLAlchemyError) as exc:
                    logger.error("supervisor: finalize failed", error=str(exc), exc_info=True)
                    failure = PersistenceError(f"could not finalize mission {mission_id}: {exc}")
                    failure.__cause__ = exc
                else:
                    logger.info(
                        "supervisor: mission finished",
                        status=status,
                        return_code=exit_info.return_code,
                        **counters,
                    )
            try:
                final = await self._gateway.get_mission(mission_id) or worker.mission
            except (AdObservatoryError, SQLAlchemyError) as exc:
                logger.warning("supervisor: final read failed", error=str(exc))
        finally:
            done = self._done.pop(mission_id, None)
            if done is not None and not done.done():
                if failure is not None:
                    done.set_exception(failure)
                else:
                    done.set_result(final)

    # ------------------------------------------------------------------
    # Stop / fail
    # ------------------------------------------------------------------

    async def _terminate(self, mission_id: uuid.UUID, status: str, error: Optional[str] = None) -> None:
        worker = self.registry.get(mission_id)
        await self._gateway.finalize_mission(
            mission_id,
            status,
            counters=worker.counters() if worker else None,
            error=error,
        )
        self.registry.remove(mission_id)
        if worker is not None:
            await worker.handle.terminate()

    async def stop(self, mission_id: uuid.UUID, owner_id: str) -> MissionRead:
        """Stop a mission on behalf of *owner_id*.

        Stopping a mission that is already terminal is a no-op.

        Raises:
            MissionNotFoundError: If the mission does not exist.
            OwnershipError: If *owner_id* does not own the mission.
        """
        mission = await self._gateway.get_mission(mission_id)
        if mission is None:
            raise MissionNotFoundError(str(mission_id))
        if mission.owner_id != owner_id:
            raise OwnershipError("mission", str(mission_id), owner_id)
        if mission.status in TERMINAL_STATUSES:
            return mission
        await self._terminate(mission_id, MISSION_STOPPED)
        logger.info("supervisor: mission stopped", mission_id=str(mission_id), owner_id=owner_id)
        return await self._gateway.get_mission(mission_id) or mission

    async def stop_all(self, owner_id: str) -> int:
        """Stop every active mission of *owner_id*; return how many were stopped."""
        stopped = 0
        for worker in self.registry.for_owner(owner_id):
            await self.stop(worker.mission_id, owner_id)
            stopped += 1
        return stopped

    async def fail(self, mission_id: uuid.UUID, reason: str) -> None:
        """Mark a running mission failed with *reason*, then terminate its worker."""
        await self._terminate(mission_id, MISSION_FAILED, error=reason)
        logger.warning("supervisor: mission failed", mission_id=str(mission_id), reason=reason)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, owner_id: str) -> MissionStatusReport:
        """Live view of *owner_id*'s running missions."""
        missions = [
            ActiveMission(
                mission_id=w.mission_id,
                keyword=w.mission.keyword,
                status=w.mission.status,
                found=w.found,
                new_records=w.new_records,
                duplicates_skipped=w.duplicates_skipped,
                processed=w.processed,
                max_records=w.mission.max_records,
                started_at=w.mission.started_at,
                updated_at=w.updated_at,
            )
            for w in self.registry.for_owner(owner_id)
        ]
        return MissionStatusReport(owner_id=owner_id, is_running=bool(missions), missions=missions)

    async def list_missions(self, owner_id: str, limit: int = 50) -> list[MissionRead]:
        return await self._gateway.list_missions(owner_id, limit=limit)

    async def wait(self, mission_id: uuid.UUID, timeout: Optional[float] = None) -> MissionRead:
        """Wait until the mission is finalized and return its final record.

        Raises:
            MissionNotFoundError: If the mission does not exist.
            asyncio.TimeoutError: If *timeout* elapses first.
        """
        done = self._done.get(mission_id)
        if done is None:
            mission = await self._gateway.get_mission(mission_id)
            if mission is None:
                raise MissionNotFoundError(str(mission_id))
            return mission
        return await asyncio.wait_for(asyncio.shield(done), timeout)

    @property
    def active_count(self) -> int:
        return len(self.registry)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop every active mission and wait for their monitors to finish."""
        workers = list(self.registry)
        monitors = [w.monitor for w in workers if w.monitor is not None]
        for worker in workers:
            try:
                await self._terminate(worker.mission_id, MISSION_STOPPED)
            except Exception as exc:  # noqa: BLE001
                logger.error("supervisor: shutdown stop failed", mission_id=str(worker.mission_id), error=str(exc))
        if monitors:
            await asyncio.gather(*monitors, return_exceptions=True)
        logger.info("supervisor: shut down", stopped=len(workers))
