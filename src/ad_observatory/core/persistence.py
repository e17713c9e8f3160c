"""Persistence gateway: dedup-aware record storage plus mission and schedule CRUD.

``PersistenceGateway`` is the interface the extraction engine, supervisor and
job scheduler depend on.  ``SqlPersistenceGateway`` implements it on top of the
SQLAlchemy models.

Store-level guarantees:

- ``save`` inserts and lets the ``(owner_id, dedup_hash)`` unique constraint
  decide duplicates, so concurrent missions cannot double-insert.
- Mission status moves into a terminal value through a conditional
  ``UPDATE ... WHERE status = 'running'``; a second transition matches no row.
- Counter increments are single ``SET col = col + :n`` statements, applied
  only while the mission is running.

Every method opens a short-lived synchronous session.  Event-loop code goes
through ``AsyncPersistenceGateway``, which runs those calls on a store thread.
"""

from __future__ import annotations

import asyncio
import functools
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time
from typing import Any, Optional, Protocol
from zoneinfo import ZoneInfo

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ad_observatory.core.database import get_sync_session
from ad_observatory.core.exceptions import PersistenceError
from ad_observatory.core.models import (
    MISSION_RUNNING,
    TERMINAL_STATUSES,
    ExtractedRecord,
    Mission,
    Scheduler,
    compute_dedup_hash,
    utcnow,
)
from ad_observatory.core.schemas import AdRecord, MissionRead, ResolvedLimits, SchedulerRead

logger = structlog.get_logger(__name__)

_COUNTER_COLUMNS: tuple[str, ...] = ("found", "new_records", "duplicates_skipped", "processed")
_SCHEDULE_MUTABLE: frozenset[str] = frozenset(
    {"cron_expression", "is_active", "max_records", "daily_quota", "next_run"}
)


class PersistenceGateway(Protocol):
    """Storage operations used by the extraction engine and the orchestration layer."""

    # Records
    def save(self, record: AdRecord, owner_id: str) -> bool: ...
    def count_today(self, owner_id: str) -> int: ...
    def oldest_start_date(self, owner_id: str, keyword: str) -> Optional[date]: ...

    # Missions
    def create_mission(
        self,
        keyword: str,
        owner_id: str,
        limits: ResolvedLimits,
        source: str,
        region: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> MissionRead: ...
    def get_mission(self, mission_id: uuid.UUID) -> Optional[MissionRead]: ...
    def list_missions(self, owner_id: str, limit: int = 50) -> list[MissionRead]: ...
    def increment_mission_counters(self, mission_id: uuid.UUID, **deltas: int) -> bool: ...
    def finalize_mission(
        self,
        mission_id: uuid.UUID,
        status: str,
        counters: Optional[dict[str, int]] = None,
        error: Optional[str] = None,
    ) -> bool: ...

    # Schedules
    def create_schedule(
        self,
        owner_id: str,
        keyword: str,
        cron_expression: str,
        limits: ResolvedLimits,
    ) -> SchedulerRead: ...
    def get_schedule(self, schedule_id: uuid.UUID) -> Optional[SchedulerRead]: ...
    def find_schedule(self, owner_id: str, keyword: str) -> Optional[SchedulerRead]: ...
    def list_schedules(self, owner_id: str) -> list[SchedulerRead]: ...
    def list_active_schedules(self) -> list[SchedulerRead]: ...
    def update_schedule(self, schedule_id: uuid.UUID, **fields: Any) -> Optional[SchedulerRead]: ...
    def delete_schedule(self, schedule_id: uuid.UUID) -> bool: ...
    def record_schedule_run(
        self,
        schedule_id: uuid.UUID,
        succeeded: bool,
        last_run: datetime,
        next_run: Optional[datetime],
    ) -> Optional[SchedulerRead]: ...

    def ping(self) -> bool: ...


def _greatest(column: Any, value: int) -> Any:
    """Portable ``GREATEST(column, value)``."""
    return sa.case((column < value, value), else_=column)


class SqlPersistenceGateway:
    """SQLAlchemy implementation of :class:`PersistenceGateway`.

    Args:
        session_factory: Session factory from
            :func:`~ad_observatory.core.database.build_sessionmaker`.
        timezone: IANA timezone whose local midnight starts the daily quota window.
    """

    def __init__(self, session_factory: sessionmaker[Session], timezone: str = "UTC") -> None:
        self._factory = session_factory
        self._tz = ZoneInfo(timezone)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def save(self, record: AdRecord, owner_id: str) -> bool:
        """Persist *record* for *owner_id*.

        Returns:
            ``True`` if a new row was inserted, ``False`` if the owner already
            has a record with the same dedup key.

        Raises:
            PersistenceError: On any store failure other than a duplicate.
        """
        row = ExtractedRecord(
            owner_id=owner_id,
            advertiser_name=record.advertiser_name,
            description=record.description,
            contact=record.contact,
            location=record.location,
            source=record.source,
            keyword=record.keyword,
            started_on=record.started_on,
            dedup_hash=compute_dedup_hash(record.advertiser_name, record.description),
        )
        try:
            with get_sync_session(self._factory) as session:
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to save record: {exc}") from exc
        return True

    def _day_start(self) -> datetime:
        local_now = datetime.now(self._tz)
        return datetime.combine(local_now.date(), time.min, tzinfo=self._tz)

    def count_today(self, owner_id: str) -> int:
        """Return how many records *owner_id* persisted since local midnight."""
        since = self._day_start()
        stmt = (
            sa.select(sa.func.count())
            .select_from(ExtractedRecord)
            .where(ExtractedRecord.owner_id == owner_id, ExtractedRecord.captured_at >= since)
        )
        with get_sync_session(self._factory) as session:
            return int(session.execute(stmt).scalar_one())

    def oldest_start_date(self, owner_id: str, keyword: str) -> Optional[date]:
        """Return the earliest ad start date among *owner_id*'s records for *keyword*."""
        stmt = sa.select(sa.func.min(ExtractedRecord.started_on)).where(
            ExtractedRecord.owner_id == owner_id,
            ExtractedRecord.keyword == keyword,
        )
        with get_sync_session(self._factory) as session:
            return session.execute(stmt).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------

    def create_mission(
        self,
        keyword: str,
        owner_id: str,
        limits: ResolvedLimits,
        source: str,
        region: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> MissionRead:
        mission = Mission(
            keyword=keyword,
            owner_id=owner_id,
            status=MISSION_RUNNING,
            max_records=limits.max_records,
            daily_quota=limits.daily_quota,
            source=source,
            region=region,
            execution_id=execution_id,
        )
        with get_sync_session(self._factory) as session:
            session.add(mission)
            session.commit()
            return MissionRead.model_validate(mission)

    def get_mission(self, mission_id: uuid.UUID) -> Optional[MissionRead]:
        with get_sync_session(self._factory) as session:
            mission = session.get(Mission, mission_id)
            return MissionRead.model_validate(mission) if mission is not None else None

    def list_missions(self, owner_id: str, limit: int = 50) -> list[MissionRead]:
        """Return *owner_id*'s most recent missions, newest first."""
        stmt = (
            sa.select(Mission)
            .where(Mission.owner_id == owner_id)
            .order_by(Mission.started_at.desc())
            .limit(limit)
        )
        with get_sync_session(self._factory) as session:
            return [MissionRead.model_validate(m) for m in session.scalars(stmt)]

    def increment_mission_counters(self, mission_id: uuid.UUID, **deltas: int) -> bool:
        """Atomically add *deltas* to a running mission's counters.

        Returns:
            ``False`` when the mission is no longer running (nothing changed).
        """
        values: dict[str, Any] = {}
        for name, delta in deltas.items():
            if name not in _COUNTER_COLUMNS:
                raise ValueError(f"unknown mission counter: {name}")
            if delta:
                values[name] = getattr(Mission, name) + delta
        if not values:
            return True
        values["updated_at"] = utcnow()
        stmt = (
            sa.update(Mission)
            .where(Mission.id == mission_id, Mission.status == MISSION_RUNNING)
            .values(**values)
        )
        with get_sync_session(self._factory) as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount > 0

    def finalize_mission(
        self,
        mission_id: uuid.UUID,
        status: str,
        counters: Optional[dict[str, int]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move a running mission into terminal *status*.

        Each value in *counters* is merged with the stored value by taking the
        larger of the two.

        Returns:
            ``True`` if this call performed the transition, ``False`` if the
            mission was already terminal (or does not exist).
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal mission status: {status}")
        now = utcnow()
        values: dict[str, Any] = {"status": status, "ended_at": now, "updated_at": now}
        if error is not None:
            values["error"] = error
        for name, value in (counters or {}).items():
            if name not in _COUNTER_COLUMNS:
                raise ValueError(f"unknown mission counter: {name}")
            values[name] = _greatest(getattr(Mission, name), int(value))
        stmt = (
            sa.update(Mission)
            .where(Mission.id == mission_id, Mission.status == MISSION_RUNNING)
            .values(**values)
        )
        with get_sync_session(self._factory) as session:
            result = session.execute(stmt)
            session.commit()
            transitioned = result.rowcount > 0
        if transitioned:
            logger.info("persistence: mission finalized", mission_id=str(mission_id), status=status)
        return transitioned

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def create_schedule(
        self,
        owner_id: str,
        keyword: str,
        cron_expression: str,
        limits: ResolvedLimits,
    ) -> SchedulerRead:
        schedule = Scheduler(
            owner_id=owner_id,
            keyword=keyword,
            cron_expression=cron_expression,
            is_active=True,
            max_records=limits.max_records,
            daily_quota=limits.daily_quota,
        )
        with get_sync_session(self._factory) as session:
            session.add(schedule)
            session.commit()
            return SchedulerRead.model_validate(schedule)

    def get_schedule(self, schedule_id: uuid.UUID) -> Optional[SchedulerRead]:
        with get_sync_session(self._factory) as session:
            schedule = session.get(Scheduler, schedule_id)
            return SchedulerRead.model_validate(schedule) if schedule is not None else None

    def find_schedule(self, owner_id: str, keyword: str) -> Optional[SchedulerRead]:
        stmt = sa.select(Scheduler).where(
            Scheduler.owner_id == owner_id,
            Scheduler.keyword == keyword,
        )
        with get_sync_session(self._factory) as session:
            schedule = session.scalars(stmt).first()
            return SchedulerRead.model_validate(schedule) if schedule is not None else None

    def list_schedules(self, owner_id: str) -> list[SchedulerRead]:
        stmt = (
            sa.select(Scheduler)
            .where(Scheduler.owner_id == owner_id)
            .order_by(Scheduler.created_at.desc())
        )
        with get_sync_session(self._factory) as session:
            return [SchedulerRead.model_validate(s) for s in session.scalars(stmt)]

    def list_active_schedules(self) -> list[SchedulerRead]:
        stmt = sa.select(Scheduler).where(Scheduler.is_active.is_(True))
        with get_sync_session(self._factory) as session:
            return [SchedulerRead.model_validate(s) for s in session.scalars(stmt)]

    def update_schedule(self, schedule_id: uuid.UUID, **fields: Any) -> Optional[SchedulerRead]:
        unknown = set(fields) - _SCHEDULE_MUTABLE
        if unknown:
            raise ValueError(f"cannot update schedule fields: {sorted(unknown)}")
        with get_sync_session(self._factory) as session:
            schedule = session.get(Scheduler, schedule_id)
            if schedule is None:
                return None
            for name, value in fields.items():
                setattr(schedule, name, value)
            session.commit()
            return SchedulerRead.model_validate(schedule)

    def delete_schedule(self, schedule_id: uuid.UUID) -> bool:
        stmt = sa.delete(Scheduler).where(Scheduler.id == schedule_id)
        with get_sync_session(self._factory) as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount > 0

    def record_schedule_run(
        self,
        schedule_id: uuid.UUID,
        succeeded: bool,
        last_run: datetime,
        next_run: Optional[datetime],
    ) -> Optional[SchedulerRead]:
        """Count one execution and advance ``last_run`` / ``next_run``."""
        outcome = Scheduler.successful_runs if succeeded else Scheduler.failed_runs
        stmt = (
            sa.update(Scheduler)
            .where(Scheduler.id == schedule_id)
            .values(
                {
                    Scheduler.total_runs: Scheduler.total_runs + 1,
                    outcome: outcome + 1,
                    Scheduler.last_run: last_run,
                    Scheduler.next_run: next_run,
                    Scheduler.updated_at: utcnow(),
                }
            )
        )
        with get_sync_session(self._factory) as session:
            session.execute(stmt)
            session.commit()
        return self.get_schedule(schedule_id)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return ``True`` if the store answers a trivial query."""
        try:
            with get_sync_session(self._factory) as session:
                session.execute(sa.text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning("persistence: ping failed", error=str(exc))
            return False
        return True


class AsyncPersistenceGateway:
    """Awaitable facade over a synchronous gateway for event-loop callers.

    Every call runs on a private thread pool, so a slow commit never blocks
    the loop that consumes worker output and fires cron jobs.  The pool has a
    single thread by default, which also serialises access to one SQLite
    connection in tests.  Exceptions propagate unchanged.

    Args:
        gateway: The synchronous gateway doing the work.
        max_workers: Store threads.
    """

    def __init__(self, gateway: PersistenceGateway, max_workers: int = 1) -> None:
        self.sync = gateway
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="store")

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        # Looked up per call so a replaced method on the sync gateway is honoured.
        fn = getattr(self.sync, method)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    # Records

    async def save(self, record: AdRecord, owner_id: str) -> bool:
        return await self._call("save", record, owner_id)

    async def count_today(self, owner_id: str) -> int:
        return await self._call("count_today", owner_id)

    async def oldest_start_date(self, owner_id: str, keyword: str) -> Optional[date]:
        return await self._call("oldest_start_date", owner_id, keyword)

    # Missions

    async def create_mission(
        self,
        keyword: str,
        owner_id: str,
        limits: ResolvedLimits,
        source: str,
        region: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> MissionRead:
        return await self._call(
            "create_mission", keyword, owner_id, limits, source, region=region, execution_id=execution_id
        )

    async def get_mission(self, mission_id: uuid.UUID) -> Optional[MissionRead]:
        return await self._call("get_mission", mission_id)

    async def list_missions(self, owner_id: str, limit: int = 50) -> list[MissionRead]:
        return await self._call("list_missions", owner_id, limit=limit)

    async def increment_mission_counters(self, mission_id: uuid.UUID, **deltas: int) -> bool:
        return await self._call("increment_mission_counters", mission_id, **deltas)

    async def finalize_mission(
        self,
        mission_id: uuid.UUID,
        status: str,
        counters: Optional[dict[str, int]] = None,
        error: Optional[str] = None,
    ) -> bool:
        return await self._call("finalize_mission", mission_id, status, counters=counters, error=error)

    # Schedules

    async def create_schedule(
        self,
        owner_id: str,
        keyword: str,
        cron_expression: str,
        limits: ResolvedLimits,
    ) -> SchedulerRead:
        return await self._call("create_schedule", owner_id, keyword, cron_expression, limits)

    async def get_schedule(self, schedule_id: uuid.UUID) -> Optional[SchedulerRead]:
        return await self._call("get_schedule", schedule_id)

    async def find_schedule(self, owner_id: str, keyword: str) -> Optional[SchedulerRead]:
        return await self._call("find_schedule", owner_id, keyword)

    async def list_schedules(self, owner_id: str) -> list[SchedulerRead]:
        return await self._call("list_schedules", owner_id)

    async def list_active_schedules(self) -> list[SchedulerRead]:
        return await self._call("list_active_schedules")

    async def update_schedule(self, schedule_id: uuid.UUID, **fields: Any) -> Optional[SchedulerRead]:
        return await self._call("update_schedule", schedule_id, **fields)

    async def delete_schedule(self, schedule_id: uuid.UUID) -> bool:
        return await self._call("delete_schedule", schedule_id)

    async def record_schedule_run(
        self,
        schedule_id: uuid.UUID,
        succeeded: bool,
        last_run: datetime,
        next_run: Optional[datetime],
    ) -> Optional[SchedulerRead]:
        return await self._call("record_schedule_run", schedule_id, succeeded, last_run, next_run)

    async def ping(self) -> bool:
        return await self._call("ping")

    def close(self) -> None:
        """Wait for in-flight calls and release the store threads."""
        self._executor.shutdown(wait=True)


def as_async_gateway(gateway: PersistenceGateway | AsyncPersistenceGateway) -> AsyncPersistenceGateway:
    """Return *gateway* unchanged if it is already awaitable, else wrap it."""
    if isinstance(gateway, AsyncPersistenceGateway):
        return gateway
    return AsyncPersistenceGateway(gateway)
