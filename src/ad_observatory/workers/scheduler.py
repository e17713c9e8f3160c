"""Recurring mission scheduler.

:class:`JobScheduler` keeps one APScheduler cron job per active
:class:`~ad_observatory.core.models.Scheduler` row.  Each tick runs
:meth:`JobScheduler.run_schedule`, which:

1. creates a mission through the supervisor and waits for it, under a
   wall-clock timeout independent of the engine's own limit (on timeout the
   mission is marked failed and its worker terminated);
2. retries failed attempts with exponential backoff (tenacity) up to
   ``scheduler_max_attempts``;
3. always records the run (``total_runs`` plus ``successful_runs`` or
   ``failed_runs``) and recomputes ``next_run``, so a failing keyword never
   stalls its schedule.

A mission that ends ``stopped`` counts as a failed run and is not retried.

Usage::

    scheduler = JobScheduler(gateway, supervisor, settings)
    await scheduler.start()        # re-arms every active schedule
    await scheduler.add_schedule("u1", "shoes", "*/5 * * * *")
    ...
    await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ad_observatory.config.settings import Settings, get_settings
from ad_observatory.core.exceptions import (
    InvalidCronExpressionError,
    OwnershipError,
    ScheduleNotFoundError,
    SchedulerExecutionError,
    WorkerTimeoutError,
)
from ad_observatory.core.models import MISSION_COMPLETED, MISSION_STOPPED
from ad_observatory.core.persistence import AsyncPersistenceGateway, PersistenceGateway, as_async_gateway
from ad_observatory.core.schemas import ActiveJob, MissionLimits, SchedulerRead, SchedulerStats
from ad_observatory.workers.health import HealthMonitor, process_memory_mb
from ad_observatory.workers.supervisor import MissionSupervisor

logger = structlog.get_logger(__name__)

_FIELD_COUNT = 5


def parse_cron(expression: str, timezone: str) -> CronTrigger:
    """Build a trigger from a standard 5-field cron expression.

    Raises:
        InvalidCronExpressionError: If the expression is not valid 5-field cron.
    """
    expression = (expression or "").strip()
    if len(expression.split()) != _FIELD_COUNT:
        raise InvalidCronExpressionError(expression, f"expected {_FIELD_COUNT} fields")
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except ValueError as exc:
        raise InvalidCronExpressionError(expression, str(exc)) from exc


def next_fire_time(trigger: CronTrigger, now: datetime) -> Optional[datetime]:
    """First fire time strictly after *now*."""
    return trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


class JobScheduler:
    """Cron-driven mission scheduler with retry, timeout and health monitoring.

    Args:
        gateway: Schedule and mission store; a synchronous gateway is wrapped.
        supervisor: Creates and awaits missions.
        settings: Application settings; :func:`get_settings` by default.
        clock: Returns the current aware datetime; wall clock by default.
    """

    def __init__(
        self,
        gateway: PersistenceGateway | AsyncPersistenceGateway,
        supervisor: MissionSupervisor,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._gateway = as_async_gateway(gateway)
        self._supervisor = supervisor
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(self._scheduler.timezone))
        self._scheduler = AsyncIOScheduler(timezone=self._settings.timezone)
        self._health = HealthMonitor(
            self._gateway,
            self._settings,
            active_jobs=lambda: len(self._scheduler.get_jobs()),
            running_executions=lambda: len(self._in_flight),
            in_flight=lambda: frozenset(self._in_flight),
        )
        self._started_at: Optional[float] = None
        self._in_flight: set[uuid.UUID] = set()
        self._jobs_created = 0
        self._jobs_completed = 0
        self._jobs_failed = 0

    # ------------------------------------------------------------------
    # Live cron jobs
    # ------------------------------------------------------------------

    def _arm(self, schedule: SchedulerRead, trigger: CronTrigger) -> None:
        self._scheduler.add_job(
            self.run_schedule,
            trigger=trigger,
            args=[schedule.id],
            id=str(schedule.id),
            name=schedule.keyword,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def _disarm(self, schedule_id: uuid.UUID) -> None:
        if self._scheduler.get_job(str(schedule_id)) is not None:
            self._scheduler.remove_job(str(schedule_id))

    async def _owned(self, owner_id: str, schedule_id: uuid.UUID) -> SchedulerRead:
        schedule = await self._gateway.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(str(schedule_id))
        if schedule.owner_id != owner_id:
            raise OwnershipError("schedule", str(schedule_id), owner_id)
        return schedule

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def add_schedule(
        self,
        owner_id: str,
        keyword: str,
        cron_expression: str,
        limits: Optional[MissionLimits] = None,
    ) -> SchedulerRead:
        """Create or reconfigure the schedule for (*owner_id*, *keyword*) and arm it.

        ``next_run`` is persisted before returning.

        Raises:
            InvalidCronExpressionError: Nothing is persisted or armed.
            InvalidLimitsError: Nothing is persisted or armed.
        """
        s = self._settings
        trigger = parse_cron(cron_expression, s.timezone)
        resolved = (limits or MissionLimits()).resolve(
            s.default_max_records, s.default_daily_quota, s.max_limit
        )
        next_run = next_fire_time(trigger, self._clock())
        cron_expression = cron_expression.strip()

        existing = await self._gateway.find_schedule(owner_id, keyword)
        if existing is not None:
            schedule = await self._gateway.update_schedule(
                existing.id,
                cron_expression=cron_expression,
                is_active=True,
                max_records=resolved.max_records,
                daily_quota=resolved.daily_quota,
                next_run=next_run,
            )
            action = "reconfigured"
        else:
            created = await self._gateway.create_schedule(owner_id, keyword, cron_expression, resolved)
            schedule = await self._gateway.update_schedule(created.id, next_run=next_run)
            action = "created"
        if schedule is None:
            raise ScheduleNotFoundError(str(existing.id if existing else keyword))

        self._arm(schedule, trigger)
        logger.info(
            f"scheduler: schedule {action}",
            schedule_id=str(schedule.id),
            keyword=keyword,
            cron=cron_expression,
            next_run=next_run.isoformat() if next_run else None,
        )
        return schedule

    async def pause(self, owner_id: str, schedule_id: uuid.UUID) -> SchedulerRead:
        """Disarm a schedule and mark it inactive; the record is kept."""
        await self._owned(owner_id, schedule_id)
        self._disarm(schedule_id)
        schedule = await self._gateway.update_schedule(schedule_id, is_active=False, next_run=None)
        logger.info("scheduler: schedule paused", schedule_id=str(schedule_id))
        return schedule

    async def resume(self, owner_id: str, schedule_id: uuid.UUID) -> SchedulerRead:
        existing = await self._owned(owner_id, schedule_id)
        trigger = parse_cron(existing.cron_expression, self._settings.timezone)
        schedule = await self._gateway.update_schedule(
            schedule_id,
            is_active=True,
            next_run=next_fire_time(trigger, self._clock()),
        )
        self._arm(schedule, trigger)
        logger.info("scheduler: schedule resumed", schedule_id=str(schedule_id))
        return schedule

    async def remove(self, owner_id: str, schedule_id: uuid.UUID) -> None:
        """Disarm a schedule and delete its record."""
        await self._owned(owner_id, schedule_id)
        self._disarm(schedule_id)
        await self._gateway.delete_schedule(schedule_id)
        logger.info("scheduler: schedule removed", schedule_id=str(schedule_id))

    async def update(
        self,
        owner_id: str,
        schedule_id: uuid.UUID,
        cron_expression: Optional[str] = None,
        limits: Optional[MissionLimits] = None,
    ) -> SchedulerRead:
        """Change a schedule's cron expression and/or limits.

        Omitted values keep their current setting.  An active schedule is
        re-armed with the new trigger.
        """
        existing = await self._owned(owner_id, schedule_id)
        cron = (cron_expression or existing.cron_expression).strip()
        trigger = parse_cron(cron, self._settings.timezone)
        resolved = (limits or MissionLimits()).resolve(
            existing.max_records, existing.daily_quota, self._settings.max_limit
        )
        fields = {
            "cron_expression": cron,
            "max_records": resolved.max_records,
            "daily_quota": resolved.daily_quota,
        }
        if existing.is_active:
            fields["next_run"] = next_fire_time(trigger, self._clock())
        schedule = await self._gateway.update_schedule(schedule_id, **fields)
        if schedule.is_active:
            self._arm(schedule, trigger)
        logger.info("scheduler: schedule updated", schedule_id=str(schedule_id), cron=cron)
        return schedule

    async def list_schedules(self, owner_id: str) -> list[SchedulerRead]:
        return await self._gateway.list_schedules(owner_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_once(self, schedule: SchedulerRead) -> str:
        """Run one mission for *schedule* and return its terminal status.

        Any failure to create, await or finalize the mission is reported as a
        :class:`SchedulerExecutionError`, so every failed attempt is retried.

        Raises:
            SchedulerExecutionError: If the mission failed or timed out.
        """
        timeout = self._settings.scheduler_execution_timeout_seconds
        try:
            mission = await self._supervisor.create(
                schedule.keyword,
                schedule.owner_id,
                MissionLimits(max_records=schedule.max_records, daily_quota=schedule.daily_quota),
                execution_id=f"{schedule.id}:{uuid.uuid4().hex[:12]}",
            )
        except Exception as exc:
            raise SchedulerExecutionError(f"could not create scheduled mission: {exc}") from exc
        try:
            final = await asyncio.wait_for(self._supervisor.wait(mission.id), timeout)
        except asyncio.TimeoutError:
            await self._supervisor.fail(mission.id, f"scheduled execution exceeded {timeout:g}s")
            raise SchedulerExecutionError(
                "scheduled mission timed out", mission_id=str(mission.id), status="failed"
            ) from WorkerTimeoutError(str(mission.id), timeout)
        except Exception as exc:
            raise SchedulerExecutionError(
                f"scheduled mission could not be awaited: {exc}", mission_id=str(mission.id)
            ) from exc

        if final.status in (MISSION_COMPLETED, MISSION_STOPPED):
            return final.status
        raise SchedulerExecutionError(
            f"scheduled mission ended {final.status}: {final.error or 'no error recorded'}",
            mission_id=str(mission.id),
            status=final.status,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "scheduler: attempt failed, retrying",
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome else None,
            sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        )

    async def _execute_with_retry(self, schedule: SchedulerRead) -> bool:
        s = self._settings
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, s.scheduler_max_attempts)),
            wait=wait_exponential(multiplier=s.scheduler_retry_base_seconds, min=0),
            retry=retry_if_exception_type(SchedulerExecutionError),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                status = await self._execute_once(schedule)
        if status == MISSION_STOPPED:
            logger.warning("scheduler: scheduled mission was stopped", schedule_id=str(schedule.id))
        return status == MISSION_COMPLETED

    async def run_schedule(self, schedule_id: uuid.UUID) -> Optional[SchedulerRead]:
        """Execute one tick of *schedule_id* and record its outcome.

        Returns:
            The schedule after bookkeeping, or ``None`` if it no longer exists
            or is inactive.
        """
        schedule = await self._gateway.get_schedule(schedule_id)
        if schedule is None or not schedule.is_active:
            logger.warning("scheduler: tick for missing or inactive schedule", schedule_id=str(schedule_id))
            self._disarm(schedule_id)
            return None

        log = logger.bind(schedule_id=str(schedule_id), keyword=schedule.keyword)
        log.info("scheduler: execution started")
        self._in_flight.add(schedule_id)
        self._jobs_created += 1
        succeeded = False
        try:
            succeeded = await self._execute_with_retry(schedule)
        except Exception as exc:  # noqa: BLE001
            log.error("scheduler: execution failed after retries", error=str(exc), exc_info=True)
        finally:
            self._in_flight.discard(schedule_id)
            if succeeded:
                self._jobs_completed += 1
            else:
                self._jobs_failed += 1
            last_run = self._clock()
            try:
                next_run = next_fire_time(parse_cron(schedule.cron_expression, self._settings.timezone), last_run)
            except InvalidCronExpressionError:
                next_run = None
            updated = await self._gateway.record_schedule_run(schedule_id, succeeded, last_run, next_run)

        log.info(
            "scheduler: execution recorded",
            succeeded=succeeded,
            next_run=next_run.isoformat() if next_run else None,
        )
        return updated

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def active_jobs(self) -> list[ActiveJob]:
        return [
            ActiveJob(schedule_id=job.id, next_fire_time=getattr(job, "next_run_time", None))
            for job in self._scheduler.get_jobs()
        ]

    def stats(self) -> SchedulerStats:
        finished = self._jobs_completed + self._jobs_failed
        return SchedulerStats(
            jobs_created=self._jobs_created,
            jobs_completed=self._jobs_completed,
            jobs_failed=self._jobs_failed,
            success_rate=round(100.0 * self._jobs_completed / finished, 2) if finished else 0.0,
            active_jobs=len(self._scheduler.get_jobs()),
            running_executions=len(self._in_flight),
            memory_mb=round(process_memory_mb(), 1),
            uptime_seconds=round(time.monotonic() - self._started_at, 1) if self._started_at else 0.0,
        )

    @property
    def health(self) -> HealthMonitor:
        return self._health

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Re-arm every active schedule, start cron and monitors.

        Returns:
            Number of schedules armed.
        """
        armed = 0
        now = self._clock()
        for schedule in await self._gateway.list_active_schedules():
            try:
                trigger = parse_cron(schedule.cron_expression, self._settings.timezone)
            except InvalidCronExpressionError as exc:
                logger.error("scheduler: stored schedule has invalid cron", schedule_id=str(schedule.id), error=str(exc))
                continue
            await self._gateway.update_schedule(schedule.id, next_run=next_fire_time(trigger, now))
            self._arm(schedule, trigger)
            armed += 1
        self._scheduler.start()
        self._started_at = time.monotonic()
        self._health.start()
        logger.info("scheduler: started", armed=armed, timezone=self._settings.timezone)
        return armed

    async def shutdown(self) -> None:
        """Stop cron, the monitors and every in-flight mission."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        await self._health.stop()
        await self._supervisor.shutdown()
        logger.info("scheduler: shut down")
