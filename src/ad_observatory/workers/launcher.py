"""Worker launchers: start one extraction worker and expose its progress and exit.

Two launchers share the :class:`WorkerLauncher` / :class:`WorkerHandle`
interface:

- :class:`InProcessWorkerLauncher` runs the engine as an asyncio task and
  receives typed progress events over an ``asyncio.Queue``.
- :class:`SubprocessWorkerLauncher` runs ``python -m
  ad_observatory.extraction.worker`` and decodes the tagged line protocol
  from its stdout.

Exit dispositions map onto mission statuses in the supervisor:
``NORMAL`` to completed, ``KILLED`` to stopped, ``ERROR`` to failed.
"""

from __future__ import annotations

import asyncio
import enum
import sys
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from ad_observatory.config.settings import Settings
from ad_observatory.core.logging_config import mission_id_var
from ad_observatory.core.persistence import AsyncPersistenceGateway, PersistenceGateway, as_async_gateway
from ad_observatory.core.schemas import WorkerInvocation
from ad_observatory.extraction.config import EngineConfig
from ad_observatory.extraction.progress import Decoded, LineProtocolDecoder, QueueProgressSink
from ad_observatory.extraction.worker import DriverFactory, run_worker

logger = structlog.get_logger(__name__)

WORKER_MODULE = "ad_observatory.extraction.worker"
_READ_CHUNK = 4096


class ExitDisposition(str, enum.Enum):
    NORMAL = "normal"
    KILLED = "killed"
    ERROR = "error"


@dataclass(frozen=True)
class WorkerExit:
    disposition: ExitDisposition
    return_code: Optional[int] = None
    error: Optional[str] = None


class WorkerHandle(Protocol):
    """A running worker."""

    def events(self) -> AsyncIterator[Decoded]:
        """Yield progress events and the summary until the worker's stream ends."""
        ...

    async def wait(self) -> WorkerExit: ...

    async def terminate(self) -> None:
        """Stop the worker without asking it to unwind."""
        ...


class WorkerLauncher(Protocol):
    async def launch(self, invocation: WorkerInvocation) -> WorkerHandle: ...


# ---------------------------------------------------------------------------
# Subprocess workers
# ---------------------------------------------------------------------------


class SubprocessWorkerHandle:
    def __init__(self, process: asyncio.subprocess.Process, kill_grace: float) -> None:
        self._process = process
        self._kill_grace = kill_grace
        self._terminated = False

    @property
    def pid(self) -> int:
        return self._process.pid

    async def events(self) -> AsyncIterator[Decoded]:
        stdout = self._process.stdout
        if stdout is None:
            return
        decoder = LineProtocolDecoder()
        while True:
            chunk = await stdout.read(_READ_CHUNK)
            if not chunk:
                break
            for item in decoder.feed(chunk):
                yield item
        for item in decoder.close():
            yield item

    async def wait(self) -> WorkerExit:
        code = await self._process.wait()
        if self._terminated or code < 0:
            return WorkerExit(ExitDisposition.KILLED, return_code=code)
        if code == 0:
            return WorkerExit(ExitDisposition.NORMAL, return_code=code)
        return WorkerExit(ExitDisposition.ERROR, return_code=code, error=f"worker exited with code {code}")

    async def terminate(self) -> None:
        if self._process.returncode is not None:
            return
        self._terminated = True
        try:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=self._kill_grace)
            except asyncio.TimeoutError:
                logger.warning("launcher: worker ignored SIGTERM, killing", pid=self._process.pid)
                self._process.kill()
        except ProcessLookupError:
            pass


class SubprocessWorkerLauncher:
    """Launch each mission as ``python -m ad_observatory.extraction.worker``.

    Worker stderr (its structured logs) is inherited from the service process.
    """

    def __init__(self, python: Optional[str] = None, kill_grace: float = 10.0) -> None:
        self._python = python or sys.executable
        self._kill_grace = kill_grace

    @classmethod
    def from_settings(cls, settings: Settings) -> "SubprocessWorkerLauncher":
        return cls(python=settings.worker_python, kill_grace=settings.worker_kill_grace_seconds)

    async def launch(self, invocation: WorkerInvocation) -> SubprocessWorkerHandle:
        process = await asyncio.create_subprocess_exec(
            self._python,
            "-m",
            WORKER_MODULE,
            *invocation.to_argv(),
            stdout=asyncio.subprocess.PIPE,
        )
        logger.info("launcher: worker process started", pid=process.pid, keyword=invocation.keyword)
        return SubprocessWorkerHandle(process, self._kill_grace)


# ---------------------------------------------------------------------------
# In-process workers
# ---------------------------------------------------------------------------


class InProcessWorkerHandle:
    def __init__(self, task: "asyncio.Task[object]", queue: "asyncio.Queue[Optional[Decoded]]", kill_grace: float) -> None:
        self._task = task
        self._queue = queue
        self._kill_grace = kill_grace
        self._terminated = False
        task.add_done_callback(lambda _t: queue.put_nowait(None))

    async def events(self) -> AsyncIterator[Decoded]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def wait(self) -> WorkerExit:
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return WorkerExit(ExitDisposition.KILLED)
        exc = self._task.exception()
        if exc is not None:
            if self._terminated:
                return WorkerExit(ExitDisposition.KILLED)
            return WorkerExit(ExitDisposition.ERROR, error=str(exc) or type(exc).__name__)
        return WorkerExit(ExitDisposition.NORMAL)

    async def terminate(self) -> None:
        if self._task.done():
            return
        self._terminated = True
        self._task.cancel()
        await asyncio.wait({self._task}, timeout=self._kill_grace)


class InProcessWorkerLauncher:
    """Run the extraction engine as a task on the supervisor's event loop.

    Args:
        gateway: Store the engine persists records to.  Every in-process
            worker shares one store thread pool.
        settings: Application settings.
        driver_factory: Page driver factory; Playwright by default.
        engine_config: Engine tunables; built from *settings* by default.
    """

    def __init__(
        self,
        gateway: PersistenceGateway | AsyncPersistenceGateway,
        settings: Settings,
        driver_factory: Optional[DriverFactory] = None,
        engine_config: Optional[EngineConfig] = None,
    ) -> None:
        self._gateway = as_async_gateway(gateway)
        self._settings = settings
        self._driver_factory = driver_factory
        self._engine_config = engine_config

    async def _run(self, invocation: WorkerInvocation, queue: "asyncio.Queue[Optional[Decoded]]") -> object:
        if invocation.mission_id is not None:
            mission_id_var.set(str(invocation.mission_id))
        return await run_worker(
            invocation,
            self._gateway,
            QueueProgressSink(queue),
            self._settings,
            driver_factory=self._driver_factory,
            engine_config=self._engine_config,
        )

    async def launch(self, invocation: WorkerInvocation) -> InProcessWorkerHandle:
        queue: asyncio.Queue[Optional[Decoded]] = asyncio.Queue()
        task = asyncio.create_task(
            self._run(invocation, queue),
            name=f"extraction-{invocation.mission_id}",
        )
        return InProcessWorkerHandle(task, queue, self._settings.worker_kill_grace_seconds)


def build_launcher(settings: Settings, gateway: PersistenceGateway | AsyncPersistenceGateway) -> WorkerLauncher:
    """Return the launcher selected by ``settings.worker_mode``."""
    if settings.worker_mode == "inprocess":
        return InProcessWorkerLauncher(gateway, settings)
    return SubprocessWorkerLauncher.from_settings(settings)
