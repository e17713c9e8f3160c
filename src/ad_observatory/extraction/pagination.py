"""Scroll-based pagination for the virtualised results list.

The list loads more cards when the viewport nears its end, but it may add
cards without growing the page, or need a nudge before it reacts at all.
One :meth:`ScrollPaginator.advance` step therefore escalates:

1. scroll past the bottom, then poll for height growth *or* card-count growth;
2. jiggle (scroll up, pause, scroll back down) and check once;
3. scroll to the very top and back to the bottom and check card count once.

If nothing changed after step 3, the step reports failure and the engine
decides whether to retry, reload or stop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ad_observatory.extraction.browser import PageDriver
from ad_observatory.extraction.config import EngineConfig
from ad_observatory.extraction.discovery import DiscoveryChain

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ScrollPaginator:
    """Poll-based "load more" driver for one page.

    Args:
        driver: Page driver of the running session.
        chain: Discovery chain used to count cards.
        config: Engine tunables (poll interval, wait bounds, jiggle timings).
        sleep: Coroutine used for all pauses; ``asyncio.sleep`` by default.
    """

    def __init__(
        self,
        driver: PageDriver,
        chain: DiscoveryChain,
        config: EngineConfig,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._driver = driver
        self._chain = chain
        self._config = config
        self._sleep = sleep

    async def _pause(self, ms: int) -> None:
        await self._sleep(ms / 1000)

    async def card_count(self) -> int:
        root = await self._driver.snapshot()
        return len(self._chain.discover(root)) if root is not None else 0

    async def _measure(self) -> tuple[int, int]:
        return await self._driver.scroll_height(), await self.card_count()

    async def advance(self) -> bool:
        """Try to make the page load more cards.

        Returns:
            ``True`` if the page height or the card count grew.
        """
        cfg = self._config
        prev_count = await self.card_count()
        prev_height = await self._driver.scroll_to_bottom(cfg.scroll_margin_px)

        elapsed = 0
        while elapsed < cfg.poll_max_wait_ms:
            await self._pause(cfg.poll_interval_ms)
            elapsed += max(cfg.poll_interval_ms, 1)
            height, count = await self._measure()
            if height > prev_height or count > prev_count:
                logger.debug(
                    "extraction: new content: height %s->%s, cards %s->%s",
                    prev_height, height, prev_count, count,
                )
                return True

        logger.debug("extraction: no new content after scroll, trying jiggle")
        await self._driver.scroll_by(-cfg.jiggle_up_px)
        await self._pause(cfg.jiggle_pause_ms)
        await self._driver.scroll_to_bottom(cfg.scroll_margin_px)
        await self._pause(cfg.jiggle_settle_ms)
        height, count = await self._measure()
        if height > prev_height or count > prev_count:
            logger.debug("extraction: jiggle worked: cards %s->%s", prev_count, count)
            return True

        await self._driver.scroll_to_top()
        await self._pause(cfg.reset_pause_ms)
        await self._driver.scroll_to_bottom(cfg.scroll_margin_px)
        await self._pause(cfg.reset_settle_ms)
        count = await self.card_count()
        if count > prev_count:
            logger.debug("extraction: scroll reset worked: cards %s->%s", prev_count, count)
            return True
        return False
