"""Constants and tuning parameters for the extraction engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ad_observatory.config.settings import Settings

# ---------------------------------------------------------------------------
# Record-container discovery
# ---------------------------------------------------------------------------

#: Structural marker attribute carried by record cards when the site renders it.
MARKER_ATTRIBUTE: str = "data-testid"
MARKER_VALUE: str = "fb-ad-library-ad-card"

#: Exact (lower-cased, stripped) texts of the per-card "details" link.
DETAIL_LINK_PHRASES: frozenset[str] = frozenset(
    {"see ad details", "ad details", "see summary details"}
)

#: Tags whose text is compared against :data:`DETAIL_LINK_PHRASES`.
DETAIL_LINK_TAGS: frozenset[str] = frozenset({"a", "span", "div"})

#: Maximum ancestor levels walked up from a detail link.
DETAIL_LINK_MAX_DEPTH: int = 12

#: A card container must exceed both dimensions (CSS pixels).
CARD_MIN_WIDTH: float = 200
CARD_MIN_HEIGHT: float = 100

#: Obfuscated class names seen on card containers; only trusted under a scoped root.
CARD_CLASS_NAMES: frozenset[str] = frozenset({"xh8yej3", "x1plvlek"})
SCOPED_CLASS_MIN_TEXT: int = 50

#: Sibling-homogeneity heuristic bounds.
SIBLING_MIN_CHILDREN: int = 3
SIBLING_MAX_CHILDREN: int = 200
SIBLING_MIN_TEXT: int = 100
SIBLING_MIN_HEIGHT: float = 80
SIBLING_MIN_CARD_LIKE: int = 3
SIBLING_MIN_RATIO: float = 0.6

#: Scope candidates, most specific first.  ``body`` is the fallback.
SCOPE_ROLE: str = "main"
SCOPE_TEST_IDS: tuple[str, ...] = ("ad_library_main_content", "search_results_container")

# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------

#: Sentinel advertiser name when no strategy yields one.
UNKNOWN_ADVERTISER: str = "Unknown"

#: Link / button texts that are never an advertiser name.
ADVERTISER_STOPWORDS: frozenset[str] = frozenset(
    {"sponsored", "active", "inactive", "learn more"} | DETAIL_LINK_PHRASES
)

#: Advertiser link text must be strictly between these lengths.
ADVERTISER_MIN_LEN: int = 1
ADVERTISER_MAX_LEN: int = 100

#: Minimum length of the fallback "longest text" description.
DESCRIPTION_MIN_LEN: int = 20

#: Indian mobile numbers, optionally prefixed with +91.
PHONE_PATTERN: re.Pattern[str] = re.compile(r"(?:\+91[\-\s]?)?[6-9]\d{9}")

#: "Started running on 12 Mar 2024" / "Started running on Mar 12, 2024".
STARTED_ON_PATTERN: re.Pattern[str] = re.compile(
    r"started running on\s+([A-Za-z0-9 ,]+?\d{4})", re.IGNORECASE
)
STARTED_ON_FORMATS: tuple[str, ...] = ("%d %b %Y", "%b %d, %Y", "%d %B %Y", "%B %d, %Y")

# ---------------------------------------------------------------------------
# Browser session
# ---------------------------------------------------------------------------

VIEWPORT: dict[str, int] = {"width": 1280, "height": 800}

#: User-agent string of the automated browser session.
USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

CHROMIUM_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
)

#: Request resource types aborted by the page router.  Stylesheets are kept:
#: the results list does not render without them.
BLOCKED_RESOURCE_TYPES: frozenset[str] = frozenset({"image", "font", "media"})


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for one extraction run.

    Built from settings by :meth:`from_settings`, which clamps every value to
    its supported range.  Tests construct it directly with short timings.

    Durations are in milliseconds unless the name says otherwise.
    """

    batch_size: int = 50
    max_scroll_attempts: int = 50_000
    max_execution_seconds: float = 600 * 60
    navigation_timeout_ms: int = 20_000
    element_wait_timeout_ms: int = 10_000
    results_wait_timeout_ms: int = 20_000
    stability_reload_interval: int = 3_000
    quota_check_interval: int = 10
    max_empty_polls: int = 5
    max_scroll_fails: int = 8
    max_reloads: int = 3
    resource_log_interval: int = 20

    # Pagination timing
    poll_interval_ms: int = 300
    poll_max_wait_ms: int = 3_000
    scroll_margin_px: int = 200
    jiggle_up_px: int = 800
    jiggle_pause_ms: int = 500
    jiggle_settle_ms: int = 1_500
    reset_pause_ms: int = 800
    reset_settle_ms: int = 2_000

    # Recovery timing
    scroll_fail_pause_ms: int = 2_000
    reload_settle_ms: int = 3_000
    navigation_settle_ms: int = 2_000

    blocked_resource_types: frozenset[str] = field(default=BLOCKED_RESOURCE_TYPES)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "EngineConfig":
        poll_interval = _clamp(settings.engine_poll_interval_ms, 50, 5_000)
        return cls(
            batch_size=_clamp(settings.engine_batch_size, 10, 500),
            max_scroll_attempts=_clamp(settings.engine_max_scroll_attempts, 5, 100_000),
            max_execution_seconds=_clamp(settings.engine_max_execution_seconds, 300, 36_000),
            navigation_timeout_ms=_clamp(settings.engine_navigation_timeout_ms, 1_000, 120_000),
            element_wait_timeout_ms=_clamp(settings.engine_element_wait_timeout_ms, 1_000, 120_000),
            results_wait_timeout_ms=max(settings.engine_element_wait_timeout_ms, 20_000),
            stability_reload_interval=_clamp(settings.engine_stability_reload_interval, 100, 1_000_000),
            quota_check_interval=_clamp(settings.engine_quota_check_interval, 1, 1_000),
            max_empty_polls=_clamp(settings.engine_max_empty_polls, 1, 100),
            max_scroll_fails=_clamp(settings.engine_max_scroll_fails, 1, 100),
            max_reloads=_clamp(settings.engine_max_reloads, 0, 20),
            resource_log_interval=_clamp(settings.engine_resource_log_interval, 1, 50),
            poll_interval_ms=poll_interval,
            poll_max_wait_ms=_clamp(settings.engine_poll_max_wait_ms, poll_interval, 30_000),
        )
