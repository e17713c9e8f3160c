"""Extraction worker entry point.

Runs one mission in its own process::

    python -m ad_observatory.extraction.worker "running shoes" \\
        --max-records 500 --daily-quota 2000 --mission-id <uuid> \\
        --platforms facebook,instagram --start-date 2024-01-01

Progress tags and the trailing summary go to **stdout**; structured logs go
to stderr.  Exit status: 0 when the run completed (including a stall with
partial results), 1 on a fatal error such as a navigation failure.  A worker
killed by a signal exits with the negative signal number, which the
supervisor maps to ``stopped``.

:func:`run_worker` is also used directly by the in-process launcher.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import date
from typing import Optional

import structlog

from ad_observatory.config.settings import Settings, get_settings
from ad_observatory.core.exceptions import AdObservatoryError, MissionError
from ad_observatory.core.logging_config import configure_logging, mission_id_var
from ad_observatory.core.persistence import AsyncPersistenceGateway, PersistenceGateway, as_async_gateway
from ad_observatory.core.schemas import ExtractionSummary, FilterSet, WorkerInvocation
from ad_observatory.extraction.browser import PageDriver, PlaywrightPageDriver
from ad_observatory.extraction.config import EngineConfig
from ad_observatory.extraction.engine import ExtractionEngine
from ad_observatory.extraction.progress import LineProgressSink, ProgressSink
from ad_observatory.extraction.query import build_search_url

logger = structlog.get_logger(__name__)

DriverFactory = Callable[[EngineConfig], AbstractAsyncContextManager[PageDriver]]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ad-observatory-worker",
        description="Run one ad extraction mission.",
    )
    parser.add_argument("keyword", nargs="+", help="Search keyword (multiple words are joined).")
    parser.add_argument("--max-records", type=int, required=True)
    parser.add_argument("--daily-quota", type=int, required=True)
    parser.add_argument("--mission-id", type=uuid.UUID, default=None)
    parser.add_argument("--owner-id", default=None)
    parser.add_argument("--language", default=None)
    parser.add_argument("--advertiser", default=None)
    parser.add_argument("--platforms", default=None, help="Comma-separated publisher platforms.")
    parser.add_argument("--media-type", default=None)
    parser.add_argument("--active-status", default=None)
    parser.add_argument("--start-date", type=date.fromisoformat, default=None)
    parser.add_argument("--end-date", type=date.fromisoformat, default=None)
    parser.add_argument("--region", default=None)
    parser.add_argument("--resume-date", type=date.fromisoformat, default=None)
    return parser


def parse_invocation(argv: Optional[list[str]] = None) -> WorkerInvocation:
    """Parse worker CLI arguments into a :class:`WorkerInvocation`."""
    args = build_parser().parse_args(argv)
    platforms = [p.strip() for p in (args.platforms or "").split(",") if p.strip()]
    return WorkerInvocation(
        keyword=" ".join(args.keyword).strip().strip('"'),
        max_records=args.max_records,
        daily_quota=args.daily_quota,
        mission_id=args.mission_id,
        owner_id=args.owner_id,
        resume_date=args.resume_date,
        filters=FilterSet(
            language=args.language,
            advertiser=args.advertiser,
            platforms=platforms,
            media_type=args.media_type,
            active_status=args.active_status,
            start_date=args.start_date,
            end_date=args.end_date,
            region=args.region,
        ),
    )


async def _resolve_owner(invocation: WorkerInvocation, gateway: AsyncPersistenceGateway) -> str:
    if invocation.owner_id:
        return invocation.owner_id
    if invocation.mission_id is not None:
        mission = await gateway.get_mission(invocation.mission_id)
        logger.info("worker: mission lookup", found=mission is not None)
        if mission is not None:
            return mission.owner_id
    raise MissionError(
        "cannot determine the mission owner",
        mission_id=str(invocation.mission_id) if invocation.mission_id else None,
    )


async def run_worker(
    invocation: WorkerInvocation,
    gateway: PersistenceGateway | AsyncPersistenceGateway,
    sink: ProgressSink,
    settings: Settings,
    driver_factory: Optional[DriverFactory] = None,
    engine_config: Optional[EngineConfig] = None,
) -> ExtractionSummary:
    """Run one mission to completion.

    Raises:
        NavigationError: If the search page cannot be loaded.
        MissionError: If no owner can be determined for the mission.
    """
    store = as_async_gateway(gateway)
    owner_id = await _resolve_owner(invocation, store)
    config = engine_config or EngineConfig.from_settings(settings)
    url = build_search_url(
        invocation.keyword,
        invocation.filters,
        base_url=settings.target_base_url,
        default_region=settings.default_region,
    )
    factory = driver_factory or (lambda c: PlaywrightPageDriver(c, headless=settings.headless))
    async with factory(config) as driver:
        engine = ExtractionEngine(driver, store, sink, config, source=settings.source_tag)
        return await engine.run(
            url,
            keyword=invocation.keyword,
            owner_id=owner_id,
            max_records=invocation.max_records,
            daily_quota=invocation.daily_quota,
            resume_cutoff=invocation.resume_date,
        )


def main(argv: Optional[list[str]] = None) -> int:
    from ad_observatory.core.database import get_sessionmaker  # noqa: PLC0415
    from ad_observatory.core.persistence import SqlPersistenceGateway  # noqa: PLC0415

    settings = get_settings()
    configure_logging(settings.log_level, stream=sys.stderr)
    invocation = parse_invocation(argv)
    if invocation.mission_id is not None:
        mission_id_var.set(str(invocation.mission_id))

    gateway = SqlPersistenceGateway(get_sessionmaker(), timezone=settings.timezone)
    logger.info(
        "worker: starting",
        keyword=invocation.keyword,
        max_records=invocation.max_records,
        daily_quota=invocation.daily_quota,
    )
    try:
        asyncio.run(run_worker(invocation, gateway, LineProgressSink(sys.stdout), settings))
    except AdObservatoryError as exc:
        logger.error("worker: mission failed", error=str(exc))
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("worker: unexpected error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
