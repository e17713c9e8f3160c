"""Tests for JobScheduler: schedule management, ticks, retries and bookkeeping.

Ticks are driven by calling ``run_schedule`` directly with an injected clock,
so no test waits for a real cron fire time.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from ad_observatory.config.settings import Settings
from ad_observatory.core.exceptions import (
    InvalidCronExpressionError,
    InvalidLimitsError,
    OwnershipError,
    PersistenceError,
    ScheduleNotFoundError,
)
from ad_observatory.core.persistence import AsyncPersistenceGateway, SqlPersistenceGateway
from ad_observatory.core.schemas import MissionLimits, ResolvedLimits
from ad_observatory.workers.launcher import ExitDisposition
from ad_observatory.workers.scheduler import JobScheduler, next_fire_time, parse_cron
from ad_observatory.workers.supervisor import MissionSupervisor
from tests.factories.workers import ScriptedLauncher, WorkerScript, saved_events

START = datetime(2024, 5, 1, 0, 30, tzinfo=timezone.utc)

OK = WorkerScript(items=saved_events(2))
BROKEN = WorkerScript(disposition=ExitDisposition.ERROR, error="worker exited with code 1")


class Clock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _scheduler(
    gateway: SqlPersistenceGateway, settings: Settings, *scripts, clock: Clock | None = None
) -> tuple[JobScheduler, ScriptedLauncher, Clock]:
    launcher = ScriptedLauncher(list(scripts) or [OK])
    store = AsyncPersistenceGateway(gateway)
    supervisor = MissionSupervisor(store, launcher, settings=settings)
    clock = clock or Clock()
    return JobScheduler(store, supervisor, settings=settings, clock=clock), launcher, clock


# ---------------------------------------------------------------------------
# Cron parsing
# ---------------------------------------------------------------------------


class TestParseCron:
    def test_next_fire_time_is_strictly_after_now(self) -> None:
        trigger = parse_cron("0 */6 * * *", "UTC")
        at_boundary = datetime(2024, 5, 1, 6, 0, tzinfo=timezone.utc)

        assert next_fire_time(trigger, at_boundary) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert next_fire_time(trigger, START) == at_boundary

    @pytest.mark.parametrize(
        "expression",
        ["", "* * * *", "*/10 * * * * *", "61 * * * *", "* * 32 * *", "not a cron at all"],
    )
    def test_invalid_expressions(self, expression: str) -> None:
        with pytest.raises(InvalidCronExpressionError):
            parse_cron(expression, "UTC")


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------


class TestAddSchedule:
    @pytest.mark.asyncio
    async def test_next_run_is_persisted_before_returning(
        self, gateway: SqlPersistenceGateway, settings: Settings
    ) -> None:
        clock = Clock(datetime(2024, 5, 1, 10, 2, tzinfo=timezone.utc))
        scheduler, _, _ = _scheduler(gateway, settings, clock=clock)

        schedule = await scheduler.add_schedule("u1", "shoes", "*/5 * * * *")
        stored = gateway.get_schedule(schedule.id)

        assert stored.is_active is True
        assert stored.next_run == datetime(2024, 5, 1, 10, 5, tzinfo=timezone.utc)
        assert stored.next_run > clock.now
        assert (stored.max_records, stored.daily_quota) == (settings.default_max_records, settings.default_daily_quota)
        assert [job.schedule_id for job in scheduler.active_jobs()] == [str(schedule.id)]

    @pytest.mark.asyncio
    async def test_same_keyword_reconfigures_existing_schedule(
        self, gateway: SqlPersistenceGateway, settings: Settings
    ) -> None:
        scheduler, _, _ = _scheduler(gateway, settings)
        first = await scheduler.add_schedule("u1", "shoes", "0 * * * *")
        await scheduler.pause("u1", first.id)

        second = await scheduler.add_schedule("u1", "shoes", "30 2 * * *", MissionLimits(max_records=7))

        assert second.id == first.id
        assert second.cron_expression == "30 2 * * *"
        assert second.max_records == 7
        assert second.is_active is True
        assert len(await scheduler.list_schedules("u1")) == 1
        assert len(scheduler.active_jobs()) == 1

    @pytest.mark.asyncio
    async def test_invalid_cron_has_no_side_effects(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, _, _ = _scheduler(gateway, settings)

        with pytest.raises(InvalidCronExpressionError):
            await scheduler.add_schedule("u1", "shoes", "* * * *")

        assert await scheduler.list_schedules("u1") == []
        assert scheduler.active_jobs() == []

    @pytest.mark.asyncio
    async def test_invalid_limits_have_no_side_effects(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, _, _ = _scheduler(gateway, settings)

        with pytest.raises(InvalidLimitsError):
            await scheduler.add_schedule("u1", "shoes", "0 * * * *", MissionLimits(daily_quota=0))

        assert await scheduler.list_schedules("u1") == []


class TestScheduleControls:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, _, clock = _scheduler(gateway, settings)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 */6 * * *")

        paused = await scheduler.pause("u1", schedule.id)
        assert paused.is_active is False
        assert paused.next_run is None
        assert scheduler.active_jobs() == []

        clock.now = datetime(2024, 5, 1, 7, 0, tzinfo=timezone.utc)
        resumed = await scheduler.resume("u1", schedule.id)
        assert resumed.is_active is True
        assert resumed.next_run == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert len(scheduler.active_jobs()) == 1

    @pytest.mark.asyncio
    async def test_update_rearms_with_new_cron_and_limits(
        self, gateway: SqlPersistenceGateway, settings: Settings
    ) -> None:
        scheduler, _, _ = _scheduler(gateway, settings)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 */6 * * *", MissionLimits(max_records=5, daily_quota=50))

        updated = await scheduler.update("u1", schedule.id, cron_expression="15 * * * *", limits=MissionLimits(max_records=9))

        assert updated.cron_expression == "15 * * * *"
        assert (updated.max_records, updated.daily_quota) == (9, 50)
        assert updated.next_run == datetime(2024, 5, 1, 1, 15, tzinfo=timezone.utc)
        assert len(scheduler.active_jobs()) == 1

    @pytest.mark.asyncio
    async def test_remove_deletes_record_and_job(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, _, _ = _scheduler(gateway, settings)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")

        await scheduler.remove("u1", schedule.id)

        assert gateway.get_schedule(schedule.id) is None
        assert scheduler.active_jobs() == []

    @pytest.mark.asyncio
    async def test_other_owner_cannot_touch_schedule(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, _, _ = _scheduler(gateway, settings)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")

        with pytest.raises(OwnershipError):
            await scheduler.pause("u2", schedule.id)
        with pytest.raises(OwnershipError):
            await scheduler.remove("u2", schedule.id)
        with pytest.raises(OwnershipError):
            await scheduler.update("u2", schedule.id, cron_expression="5 * * * *")

        stored = gateway.get_schedule(schedule.id)
        assert stored.is_active is True
        assert stored.cron_expression == "0 * * * *"
        assert len(scheduler.active_jobs()) == 1

    @pytest.mark.asyncio
    async def test_unknown_schedule(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, _, _ = _scheduler(gateway, settings)

        with pytest.raises(ScheduleNotFoundError):
            await scheduler.resume("u1", uuid.uuid4())


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestRunSchedule:
    @pytest.mark.asyncio
    async def test_three_ticks_with_one_failure(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        # Tick 2 fails on every attempt (scheduler_max_attempts == 2).
        scheduler, launcher, clock = _scheduler(gateway, settings, OK, BROKEN, BROKEN, OK)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 */6 * * *")

        for hour in (6, 12, 18):
            clock.now = datetime(2024, 5, 1, hour, 0, tzinfo=timezone.utc)
            updated = await scheduler.run_schedule(schedule.id)
            assert updated.last_run == clock.now
            assert updated.next_run > updated.last_run
            assert updated.next_run == clock.now + timedelta(hours=6)

        final = gateway.get_schedule(schedule.id)
        assert (final.total_runs, final.successful_runs, final.failed_runs) == (3, 2, 1)
        assert len(launcher.invocations) == 4

        stats = scheduler.stats()
        assert (stats.jobs_created, stats.jobs_completed, stats.jobs_failed) == (3, 2, 1)
        assert stats.success_rate == pytest.approx(66.67)
        assert stats.running_executions == 0

    @pytest.mark.asyncio
    async def test_missions_carry_schedule_limits_and_execution_id(
        self, gateway: SqlPersistenceGateway, settings: Settings
    ) -> None:
        scheduler, launcher, _ = _scheduler(gateway, settings)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *", MissionLimits(max_records=3, daily_quota=30))

        await scheduler.run_schedule(schedule.id)

        invocation = launcher.invocations[0]
        assert (invocation.max_records, invocation.daily_quota) == (3, 30)
        mission = gateway.get_mission(invocation.mission_id)
        assert mission.status == "completed"
        assert mission.execution_id.startswith(f"{schedule.id}:")

    @pytest.mark.asyncio
    async def test_retry_recovers_from_one_failure(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, launcher, _ = _scheduler(gateway, settings, BROKEN, OK)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")

        updated = await scheduler.run_schedule(schedule.id)

        assert (updated.successful_runs, updated.failed_runs) == (1, 0)
        statuses = [gateway.get_mission(i.mission_id).status for i in launcher.invocations]
        assert statuses == ["failed", "completed"]

    @pytest.mark.asyncio
    async def test_timeout_fails_the_mission(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        quick = settings.model_copy(update={"scheduler_execution_timeout_seconds": 0.05, "scheduler_max_attempts": 1})
        scheduler, launcher, _ = _scheduler(gateway, quick, WorkerScript(hold=True))
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")

        updated = await scheduler.run_schedule(schedule.id)

        assert (updated.total_runs, updated.failed_runs) == (1, 1)
        mission = gateway.get_mission(launcher.invocations[0].mission_id)
        assert mission.status == "failed"
        assert "exceeded" in mission.error
        assert launcher.handles[0].terminated is True

    @pytest.mark.asyncio
    async def test_stopped_mission_counts_as_failed_without_retry(
        self, gateway: SqlPersistenceGateway, settings: Settings
    ) -> None:
        scheduler, launcher, _ = _scheduler(gateway, settings, WorkerScript(disposition=ExitDisposition.KILLED))
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")

        updated = await scheduler.run_schedule(schedule.id)

        assert (updated.successful_runs, updated.failed_runs) == (0, 1)
        assert len(launcher.invocations) == 1

    @pytest.mark.asyncio
    async def test_launch_failure_is_recorded(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, launcher, _ = _scheduler(gateway, settings, OSError("spawn failed"))
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")

        updated = await scheduler.run_schedule(schedule.id)

        assert updated.failed_runs == 1
        assert updated.next_run is not None
        assert len(launcher.invocations) == settings.scheduler_max_attempts

    @pytest.mark.asyncio
    async def test_store_failure_during_create_is_retried(
        self, gateway: SqlPersistenceGateway, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        scheduler, launcher, _ = _scheduler(gateway, settings)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")
        real_create = gateway.create_mission
        keywords: list[str] = []

        def flaky_create(*args, **kwargs):
            keywords.append(args[0])
            if len(keywords) == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return real_create(*args, **kwargs)

        monkeypatch.setattr(gateway, "create_mission", flaky_create)

        updated = await scheduler.run_schedule(schedule.id)

        assert keywords == ["shoes", "shoes"]
        assert len(launcher.invocations) == 1
        assert (updated.successful_runs, updated.failed_runs) == (1, 0)

    @pytest.mark.asyncio
    async def test_unrecorded_outcome_is_retried(
        self, gateway: SqlPersistenceGateway, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        scheduler, launcher, _ = _scheduler(gateway, settings)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")
        real_finalize = gateway.finalize_mission

        def finalize_after_first_mission(mission_id, *args, **kwargs):
            if mission_id == launcher.invocations[0].mission_id:
                raise PersistenceError("disk full")
            return real_finalize(mission_id, *args, **kwargs)

        monkeypatch.setattr(gateway, "finalize_mission", finalize_after_first_mission)

        updated = await scheduler.run_schedule(schedule.id)

        assert len(launcher.invocations) == 2
        assert (updated.successful_runs, updated.failed_runs) == (1, 0)
        assert gateway.get_mission(launcher.invocations[1].mission_id).status == "completed"

    @pytest.mark.asyncio
    async def test_running_schedule_is_not_reported_overdue(
        self, gateway: SqlPersistenceGateway, settings: Settings
    ) -> None:
        scheduler, launcher, _ = _scheduler(gateway, settings, WorkerScript(hold=True))
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")
        other = await scheduler.add_schedule("u1", "bags", "0 * * * *")

        run = asyncio.create_task(scheduler.run_schedule(schedule.id))
        while not launcher.handles:
            await asyncio.sleep(0.01)
        overdue = await scheduler.health.check_overdue()
        launcher.handles[0].release()
        await run

        assert [s.id for s in overdue] == [other.id]
        assert scheduler.stats().running_executions == 0

    @pytest.mark.asyncio
    async def test_inactive_schedule_tick_is_ignored(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, launcher, _ = _scheduler(gateway, settings)
        schedule = await scheduler.add_schedule("u1", "shoes", "0 * * * *")
        await scheduler.pause("u1", schedule.id)

        assert await scheduler.run_schedule(schedule.id) is None
        assert await scheduler.run_schedule(uuid.uuid4()) is None
        assert launcher.invocations == []
        assert gateway.get_schedule(schedule.id).total_runs == 0


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_rearms_active_schedules(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        limits = ResolvedLimits(max_records=5, daily_quota=50)
        active = gateway.create_schedule("u1", "shoes", "0 */6 * * *", limits)
        paused = gateway.create_schedule("u1", "bags", "0 */6 * * *", limits)
        gateway.update_schedule(paused.id, is_active=False)
        scheduler, _, _ = _scheduler(gateway, settings)

        armed = await scheduler.start()
        try:
            assert armed == 1
            assert [job.schedule_id for job in scheduler.active_jobs()] == [str(active.id)]
            assert gateway.get_schedule(active.id).next_run == datetime(2024, 5, 1, 6, 0, tzinfo=timezone.utc)
            assert gateway.get_schedule(paused.id).next_run is None
            assert scheduler.health.running is True
            assert scheduler.stats().uptime_seconds >= 0
        finally:
            await scheduler.shutdown()

        assert scheduler.health.running is False

    @pytest.mark.asyncio
    async def test_stats_before_any_run(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        scheduler, _, _ = _scheduler(gateway, settings)

        stats = scheduler.stats()

        assert stats.jobs_created == 0
        assert stats.success_rate == 0.0
        assert stats.uptime_seconds == 0.0
        assert stats.memory_mb > 0
