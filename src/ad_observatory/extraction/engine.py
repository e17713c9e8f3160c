"""The extraction engine: one mission's poll / extract / paginate loop.

``ExtractionEngine.run`` drives a single page session until a stop condition
holds, persisting every accepted record immediately and reporting progress
through a :class:`~ad_observatory.extraction.progress.ProgressSink`.

Loop outline, once per poll:

1. Snapshot the DOM and discover record containers.
2. No containers: count an empty poll and scroll; after
   ``max_empty_polls`` reload the page (bounded by ``max_reloads``).
3. All visible containers already handled: paginate; after
   ``max_scroll_fails`` unproductive scrolls reload the page.
4. Otherwise handle the next batch of up to ``batch_size`` containers.

The reload budget is shared by both stall paths.  When it is spent the engine
raises :class:`~ad_observatory.core.exceptions.StallError`, which ``run``
converts into a normal completion with the records gathered so far.

Stop conditions: ``max_records`` saved, scroll attempt budget spent, reload
budget spent, wall-clock limit exceeded, or the owner's daily quota reached
(checked every ``quota_check_interval`` batches).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Optional

import psutil
import structlog

from ad_observatory.core.exceptions import ExtractionParseError, PersistenceError, StallError
from ad_observatory.core.persistence import AsyncPersistenceGateway, PersistenceGateway, as_async_gateway
from ad_observatory.core.schemas import ExtractionSummary, ProgressEvent, ProgressKind
from ad_observatory.extraction.browser import PageDriver
from ad_observatory.extraction.config import EngineConfig
from ad_observatory.extraction.discovery import DiscoveryChain
from ad_observatory.extraction.dom import DomNode
from ad_observatory.extraction.fields import extract_record
from ad_observatory.extraction.pagination import ScrollPaginator
from ad_observatory.extraction.progress import ProgressSink

logger = structlog.get_logger(__name__)

STOP_TARGET_REACHED = "target_reached"
STOP_DAILY_QUOTA = "daily_quota_reached"
STOP_SCROLL_BUDGET = "scroll_budget_exhausted"
STOP_EXECUTION_TIME = "max_execution_time"
STOP_STALLED = "stalled"
STOP_ERROR = "error"


@dataclass
class ExtractionStats:
    """Counters of one run.  ``cursor`` indexes the current container list and resets on reload."""

    saved: int = 0
    duplicates: int = 0
    processed: int = 0
    parse_errors: int = 0
    persistence_errors: int = 0
    scroll_attempts: int = 0
    batches: int = 0
    reloads: int = 0
    cursor: int = 0

    @property
    def found(self) -> int:
        return self.saved + self.duplicates


class ExtractionEngine:
    """Extracts up to ``max_records`` distinct records from one search page.

    Args:
        driver: Started page driver.
        gateway: Record store; a synchronous gateway is wrapped so saves run
            on a store thread.
        sink: Progress channel to the supervisor.
        config: Engine tunables.
        source: Source tag stamped on every record.
        chain: Discovery chain; the default four-strategy chain when omitted.
        sleep: Coroutine used for every pause.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        driver: PageDriver,
        gateway: PersistenceGateway | AsyncPersistenceGateway,
        sink: ProgressSink,
        config: EngineConfig,
        source: str = "facebook",
        chain: Optional[DiscoveryChain] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._driver = driver
        self._gateway = as_async_gateway(gateway)
        self._sink = sink
        self._config = config
        self._source = source
        self._chain = chain or DiscoveryChain()
        self._sleep = sleep
        self._clock = clock
        self._paginator = ScrollPaginator(driver, self._chain, config, sleep=sleep)
        self.stats = ExtractionStats()

    async def _pause(self, ms: int) -> None:
        await self._sleep(ms / 1000)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        url: str,
        keyword: str,
        owner_id: str,
        max_records: int,
        daily_quota: int,
        resume_cutoff: Optional[date] = None,
    ) -> ExtractionSummary:
        """Run the mission and return its summary.

        The summary is always sent to the sink, also when the run fails.

        Raises:
            NavigationError: If the search page cannot be loaded.
        """
        log = logger.bind(keyword=keyword, owner_id=owner_id)
        stop_reason = STOP_ERROR
        try:
            await self._driver.navigate(url)
            await self._pause(self._config.navigation_settle_ms)
            await self._driver.wait_for_results()
            try:
                stop_reason = await self._extract(keyword, owner_id, max_records, daily_quota, resume_cutoff)
            except StallError as exc:
                log.info("extraction: stalled, finishing with partial results", reloads=exc.reloads)
                stop_reason = STOP_STALLED
        finally:
            summary = ExtractionSummary(
                found=self.stats.found,
                saved=self.stats.saved,
                duplicates=self.stats.duplicates,
                processed=self.stats.processed,
                target=max_records,
                achieved=self.stats.saved >= max_records,
                stop_reason=stop_reason,
            )
            self._sink.finish(summary)
        log.info(
            "extraction: finished",
            stop_reason=stop_reason,
            saved=self.stats.saved,
            duplicates=self.stats.duplicates,
            processed=self.stats.processed,
            parse_errors=self.stats.parse_errors,
            persistence_errors=self.stats.persistence_errors,
        )
        return summary

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _extract(
        self,
        keyword: str,
        owner_id: str,
        max_records: int,
        daily_quota: int,
        resume_cutoff: Optional[date],
    ) -> str:
        cfg = self._config
        stats = self.stats
        started = self._clock()
        empty_polls = 0
        scroll_fails = 0
        next_stability_reload = cfg.stability_reload_interval
        last_resource_log = 0

        if resume_cutoff is not None:
            logger.info("extraction: resuming before cutoff", resume_cutoff=resume_cutoff.isoformat())
            await self._paginator.advance()

        while stats.saved < max_records and stats.scroll_attempts < cfg.max_scroll_attempts:
            if self._clock() - started > cfg.max_execution_seconds:
                logger.warning("extraction: execution time limit reached", limit_seconds=cfg.max_execution_seconds)
                return STOP_EXECUTION_TIME

            if stats.batches and stats.batches != last_resource_log and stats.batches % cfg.resource_log_interval == 0:
                last_resource_log = stats.batches
                self._log_resources()

            root = await self._driver.snapshot()
            cards = self._chain.discover(root) if root is not None else []
            count = len(cards)
            logger.debug(
                "extraction: poll",
                batch=stats.batches + 1,
                cards=count,
                cursor=stats.cursor,
                saved=stats.saved,
                max_records=max_records,
            )

            if count == 0:
                empty_polls += 1
                if stats.batches == 0 and empty_polls == 1:
                    await self._log_diagnostic(root)
                if empty_polls >= cfg.max_empty_polls:
                    await self._reload_or_stall("no records found")
                    empty_polls = 0
                    continue
                stats.scroll_attempts += 1
                await self._paginator.advance()
                continue

            empty_polls = 0
            batch_size = min(cfg.batch_size, count - stats.cursor)
            if batch_size <= 0:
                stats.scroll_attempts += 1
                if await self._paginator.advance():
                    scroll_fails = 0
                    continue
                scroll_fails += 1
                logger.info("extraction: scroll found no new content", attempt=scroll_fails, limit=cfg.max_scroll_fails)
                if scroll_fails >= cfg.max_scroll_fails:
                    await self._reload_or_stall("scrolling stopped producing records")
                    scroll_fails = 0
                    continue
                await self._pause(cfg.scroll_fail_pause_ms)
                continue

            scroll_fails = 0
            batch_new = 0
            for card in cards[stats.cursor:stats.cursor + batch_size]:
                if stats.saved >= max_records:
                    break
                if await self._handle(card, keyword, owner_id, max_records):
                    batch_new += 1
                stats.cursor += 1
            stats.batches += 1
            if batch_new:
                logger.info("extraction: batch done", new=batch_new, duplicates=stats.duplicates, saved=stats.saved)

            if stats.saved >= max_records:
                break

            if stats.saved >= next_stability_reload:
                logger.info("extraction: stability reload", saved=stats.saved)
                next_stability_reload += cfg.stability_reload_interval
                await self._reload()
                continue

            if stats.cursor >= count:
                stats.scroll_attempts += 1
                await self._paginator.advance()

            if stats.batches % cfg.quota_check_interval == 0:
                used = await self._gateway.count_today(owner_id)
                if used >= daily_quota:
                    logger.info("extraction: daily quota reached", used=used, daily_quota=daily_quota)
                    return STOP_DAILY_QUOTA

        if stats.saved >= max_records:
            return STOP_TARGET_REACHED
        return STOP_SCROLL_BUDGET

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _handle(self, card: DomNode, keyword: str, owner_id: str, max_records: int) -> bool:
        """Extract and persist one container.  Returns ``True`` if a new record was saved."""
        stats = self.stats
        stats.processed += 1
        try:
            record = extract_record(card, keyword, self._source)
        except ExtractionParseError as exc:
            stats.parse_errors += 1
            logger.debug("extraction: skipped unreadable card", error=str(exc))
            return False
        try:
            saved = await self._gateway.save(record, owner_id)
        except PersistenceError as exc:
            stats.persistence_errors += 1
            logger.warning("extraction: failed to save record", advertiser=record.advertiser_name, error=str(exc))
            return False

        if saved:
            stats.saved += 1
            self._sink.emit(ProgressEvent(
                kind=ProgressKind.RECORD_SAVED,
                saved=stats.saved,
                max_records=max_records,
                advertiser=record.advertiser_name,
            ))
        else:
            stats.duplicates += 1
            self._sink.emit(ProgressEvent(
                kind=ProgressKind.DUPLICATE_SKIPPED,
                advertiser=record.advertiser_name,
            ))
        return saved

    async def _reload(self) -> None:
        await self._driver.reload()
        await self._pause(self._config.reload_settle_ms)
        await self._driver.wait_for_results()
        self.stats.cursor = 0

    async def _reload_or_stall(self, reason: str) -> None:
        if self.stats.reloads >= self._config.max_reloads:
            raise StallError(f"{reason}; reload budget exhausted", reloads=self.stats.reloads)
        self.stats.reloads += 1
        logger.info("extraction: reloading page", reason=reason, reload=self.stats.reloads, limit=self._config.max_reloads)
        await self._reload()

    async def _log_diagnostic(self, root: Optional[DomNode]) -> None:
        info = await self._driver.page_info()
        if root is None:
            logger.warning("extraction: page diagnostic", snapshot=False, **info)
            return
        logger.warning(
            "extraction: page diagnostic",
            strategies=self._chain.diagnose(root),
            anchors=len(root.find_tags("a")),
            body_text_length=len(root.text_content),
            **info,
        )

    def _log_resources(self) -> None:
        rss_mb = psutil.Process().memory_info().rss / (1024 * 1024)
        logger.info("extraction: resources", rss_mb=round(rss_mb, 1), batches=self.stats.batches)
