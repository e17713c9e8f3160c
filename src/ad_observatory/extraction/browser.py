"""Headless browser page driver.

:class:`PageDriver` is the boundary between the extraction engine and the
browser: navigation, reloads, scrolling and DOM snapshots.
:class:`PlaywrightPageDriver` implements it with Playwright's async API and a
single Chromium page.

Install the browser binary once per host::

    playwright install chromium
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ad_observatory.core.exceptions import NavigationError
from ad_observatory.extraction import config as cfg
from ad_observatory.extraction.config import EngineConfig
from ad_observatory.extraction.dom import SNAPSHOT_SCRIPT, DomNode

logger = logging.getLogger(__name__)

#: Cheap in-page readiness check: a marker card or a detail link is rendered.
RESULTS_READY_SCRIPT: str = """
() => {
  if (document.querySelector('[%(attr)s="%(marker)s"]')) return true;
  const phrases = new Set(%(phrases)s);
  for (const el of document.querySelectorAll('a, span, div')) {
    if (phrases.has((el.textContent || '').trim().toLowerCase())) return true;
  }
  return false;
}
""" % {
    "attr": cfg.MARKER_ATTRIBUTE,
    "marker": cfg.MARKER_VALUE,
    "phrases": json.dumps(sorted(cfg.DETAIL_LINK_PHRASES)),
}


class PageDriver(Protocol):
    """Browser operations the extraction engine relies on."""

    async def navigate(self, url: str) -> None: ...
    async def wait_for_results(self) -> bool: ...
    async def reload(self) -> None: ...
    async def snapshot(self) -> Optional[DomNode]: ...
    async def scroll_height(self) -> int: ...
    async def scroll_to_bottom(self, margin: int) -> int: ...
    async def scroll_by(self, dy: int) -> None: ...
    async def scroll_to_top(self) -> None: ...
    async def page_info(self) -> dict[str, Any]: ...
    async def close(self) -> None: ...


class PlaywrightPageDriver:
    """Single-page Chromium session.

    Use as an async context manager::

        async with PlaywrightPageDriver(engine_config) as driver:
            await driver.navigate(url)

    Args:
        config: Engine tunables (timeouts, blocked resource types).
        headless: Launch Chromium without a window.
    """

    def __init__(self, config: EngineConfig, headless: bool = True) -> None:
        self._config = config
        self._headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def __aenter__(self) -> "PlaywrightPageDriver":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("PlaywrightPageDriver.start() has not been called")
        return self._page

    async def start(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=list(cfg.CHROMIUM_ARGS),
        )
        self._context = await self._browser.new_context(
            viewport=cfg.VIEWPORT,
            user_agent=cfg.USER_AGENT,
            ignore_https_errors=True,
        )
        self._page = await self._context.new_page()
        await self._page.route("**/*", self._route)
        self._page.set_default_timeout(self._config.element_wait_timeout_ms)
        self._page.set_default_navigation_timeout(self._config.navigation_timeout_ms)

    async def _route(self, route: Route) -> None:
        if route.request.resource_type in self._config.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def navigate(self, url: str) -> None:
        """Load *url*, retrying once with the ``commit`` wait strategy.

        Raises:
            NavigationError: If both attempts fail.
        """
        started = time.monotonic()
        logger.info("extraction: navigating to %s", url)
        try:
            await self.page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self._config.navigation_timeout_ms,
            )
        except PlaywrightError as exc:
            logger.warning("extraction: DOM load failed (%s), retrying with commit", exc)
            try:
                await self.page.goto(
                    url,
                    wait_until="commit",
                    timeout=self._config.navigation_timeout_ms,
                )
            except PlaywrightError as exc2:
                raise NavigationError(f"navigation failed: {exc2}", url=url) from exc2
        logger.info("extraction: page loaded in %.0fms", (time.monotonic() - started) * 1000)

    async def wait_for_results(self) -> bool:
        """Wait for the first card to render.  Returns ``False`` on timeout."""
        try:
            await self.page.wait_for_function(
                RESULTS_READY_SCRIPT,
                timeout=self._config.results_wait_timeout_ms,
            )
        except PlaywrightTimeoutError:
            logger.warning("extraction: results wait timed out, continuing")
            return False
        return True

    async def reload(self) -> None:
        try:
            await self.page.reload(
                wait_until="domcontentloaded",
                timeout=self._config.navigation_timeout_ms,
            )
        except PlaywrightError as exc:
            logger.warning("extraction: reload failed: %s", exc)

    # ------------------------------------------------------------------
    # DOM
    # ------------------------------------------------------------------

    async def snapshot(self) -> Optional[DomNode]:
        data = await self.page.evaluate(SNAPSHOT_SCRIPT)
        return DomNode.from_snapshot(data) if data else None

    async def scroll_height(self) -> int:
        return int(await self.page.evaluate("() => document.body.scrollHeight"))

    async def scroll_to_bottom(self, margin: int) -> int:
        """Scroll past the bottom of the page; return the height before scrolling."""
        return int(
            await self.page.evaluate(
                """(margin) => {
                    const h = document.body.scrollHeight;
                    window.scrollTo({top: h + margin, behavior: 'instant'});
                    return h;
                }""",
                margin,
            )
        )

    async def scroll_by(self, dy: int) -> None:
        await self.page.evaluate("(dy) => window.scrollBy(0, dy)", dy)

    async def scroll_to_top(self) -> None:
        await self.page.evaluate("() => window.scrollTo(0, 0)")

    async def page_info(self) -> dict[str, Any]:
        return {"url": self.page.url, "title": await self.page.title()}

    async def close(self) -> None:
        for closer, name in (
            (self._page.close if self._page else None, "page"),
            (self._context.close if self._context else None, "context"),
            (self._browser.close if self._browser else None, "browser"),
            (self._playwright.stop if self._playwright else None, "playwright"),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except PlaywrightError as exc:
                logger.debug("extraction: closing %s failed: %s", name, exc)
        self._page = self._context = self._browser = None
        self._playwright = None
