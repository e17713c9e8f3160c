"""Long-running scheduling service.

Usage::

    python -m ad_observatory.workers.service
    # or
    ad-observatory-service

Builds the store gateway and its event-loop facade, the mission supervisor and the job scheduler,
re-arms every active schedule, and runs until SIGINT or SIGTERM.  On shutdown
the cron engine and monitors stop first, then every in-flight mission is
marked stopped and its worker terminated.
"""

from __future__ import annotations

import asyncio
import signal
import sys

import structlog

from ad_observatory.config.settings import Settings, get_settings
from ad_observatory.core.database import build_engine, build_sessionmaker, init_schema
from ad_observatory.core.logging_config import configure_logging
from ad_observatory.core.persistence import AsyncPersistenceGateway, SqlPersistenceGateway
from ad_observatory.workers.launcher import build_launcher
from ad_observatory.workers.scheduler import JobScheduler
from ad_observatory.workers.supervisor import MissionSupervisor

logger = structlog.get_logger(__name__)


class SchedulingService:
    """Wires the store, supervisor and scheduler behind one shutdown handle."""

    _SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.shutdown_event = asyncio.Event()
        engine = build_engine(settings.database_url)
        init_schema(engine)
        self.gateway = SqlPersistenceGateway(build_sessionmaker(engine), timezone=settings.timezone)
        self.store = AsyncPersistenceGateway(self.gateway)
        self.supervisor = MissionSupervisor(
            self.store,
            build_launcher(settings, self.store),
            settings=settings,
        )
        self.scheduler = JobScheduler(self.store, self.supervisor, settings)

    def request_shutdown(self, signum: int) -> None:
        logger.info("service: signal received, shutting down", signal=signal.Signals(signum).name)
        self.shutdown_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[int]:
        installed = []
        for sig in self._SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError) as exc:
                logger.warning("service: signal handler unavailable", signal=sig.name, error=str(exc))
                continue
            installed.append(sig)
        return installed

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)
        try:
            await self.scheduler.start()
            logger.info("service: waiting for jobs", worker_mode=self.settings.worker_mode)
            await self.shutdown_event.wait()
        finally:
            await self.scheduler.shutdown()
            for sig in installed:
                loop.remove_signal_handler(sig)
            self.store.close()
            logger.info("service: shutdown complete")


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    try:
        asyncio.run(SchedulingService(settings).run())
    except Exception:  # noqa: BLE001
        logger.exception("service: fatal error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
