"""Tests for the in-process and subprocess worker launchers.

The subprocess tests start small Python child processes that imitate a worker
on stdout, so no browser is needed.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

from ad_observatory.config.settings import Settings
from ad_observatory.core.persistence import SqlPersistenceGateway
from ad_observatory.core.schemas import ExtractionSummary, ProgressEvent, WorkerInvocation
from ad_observatory.extraction.config import EngineConfig
from ad_observatory.workers.launcher import (
    ExitDisposition,
    InProcessWorkerLauncher,
    SubprocessWorkerHandle,
    SubprocessWorkerLauncher,
    build_launcher,
)
from tests.factories.pages import FakePageDriver, make_specs

INVOCATION = WorkerInvocation(keyword="shoes", max_records=3, daily_quota=100, owner_id="u1")


async def _drain(handle) -> list:
    return [item async for item in handle.events()]


async def _spawn(script: str) -> SubprocessWorkerHandle:
    process = await asyncio.create_subprocess_exec(
        sys.executable, "-c", script, stdout=asyncio.subprocess.PIPE
    )
    return SubprocessWorkerHandle(process, kill_grace=2.0)


class TestInProcessLauncher:
    @pytest.mark.asyncio
    async def test_events_and_normal_exit(
        self, gateway: SqlPersistenceGateway, settings: Settings, engine_config: EngineConfig
    ) -> None:
        launcher = InProcessWorkerLauncher(
            gateway,
            settings,
            driver_factory=lambda config: FakePageDriver(make_specs(5)),
            engine_config=engine_config,
        )

        handle = await launcher.launch(INVOCATION)
        items = await _drain(handle)
        exit_info = await handle.wait()

        assert [type(i) for i in items] == [ProgressEvent] * 3 + [ExtractionSummary]
        assert exit_info.disposition is ExitDisposition.NORMAL

    @pytest.mark.asyncio
    async def test_worker_exception_is_an_error_exit(
        self, gateway: SqlPersistenceGateway, settings: Settings, engine_config: EngineConfig
    ) -> None:
        launcher = InProcessWorkerLauncher(
            gateway,
            settings,
            driver_factory=lambda config: FakePageDriver(make_specs(5), fail_navigation=True),
            engine_config=engine_config,
        )

        handle = await launcher.launch(INVOCATION)
        items = await _drain(handle)
        exit_info = await handle.wait()

        assert isinstance(items[-1], ExtractionSummary)
        assert exit_info.disposition is ExitDisposition.ERROR
        assert "navigation failed" in exit_info.error

    @pytest.mark.asyncio
    async def test_terminate_is_a_killed_exit(
        self, gateway: SqlPersistenceGateway, settings: Settings, engine_config: EngineConfig
    ) -> None:
        class HangingDriver(FakePageDriver):
            async def navigate(self, url: str) -> None:
                await asyncio.Event().wait()

        launcher = InProcessWorkerLauncher(
            gateway,
            settings,
            driver_factory=lambda config: HangingDriver(make_specs(5)),
            engine_config=engine_config,
        )

        handle = await launcher.launch(INVOCATION)
        await asyncio.sleep(0)
        await handle.terminate()

        assert (await handle.wait()).disposition is ExitDisposition.KILLED


class TestSubprocessHandle:
    @pytest.mark.asyncio
    async def test_decodes_stdout_and_normal_exit(self) -> None:
        handle = await _spawn(
            "import sys\n"
            "sys.stdout.write('noise\\n[NEW_RECORD] 1/5 Acme\\n[DUPLICATE] Acme\\n')\n"
            "sys.stdout.write('[MISSION_RESULT_JSON] {\"found\": 2, \"saved\": 1, \"duplicates\": 1, \"processed\": 2}')\n"
        )

        items = await _drain(handle)
        exit_info = await handle.wait()

        assert len(items) == 3
        assert items[-1] == ExtractionSummary(found=2, saved=1, duplicates=1, processed=2)
        assert exit_info.disposition is ExitDisposition.NORMAL
        assert exit_info.return_code == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_an_error(self) -> None:
        handle = await _spawn("import sys; sys.exit(3)")

        await _drain(handle)
        exit_info = await handle.wait()

        assert exit_info.disposition is ExitDisposition.ERROR
        assert exit_info.return_code == 3

    @pytest.mark.asyncio
    async def test_terminate_is_a_killed_exit(self) -> None:
        handle = await _spawn("import time; time.sleep(30)")

        await handle.terminate()
        exit_info = await handle.wait()

        assert exit_info.disposition is ExitDisposition.KILLED


class TestBuildLauncher:
    def test_mode_selection(self, gateway: SqlPersistenceGateway, settings: Settings) -> None:
        assert isinstance(build_launcher(settings, gateway), InProcessWorkerLauncher)
        subprocess_settings = settings.model_copy(update={"worker_mode": "subprocess"})
        assert isinstance(build_launcher(subprocess_settings, gateway), SubprocessWorkerLauncher)
