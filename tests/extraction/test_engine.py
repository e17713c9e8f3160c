"""Tests for ExtractionEngine against a scripted page driver and a SQLite store.

Tests cover:
- stopping at max_records with one progress event per saved record
- a page that stops loading ends as "stalled" with partial results kept
- revisited cards after a reload count as duplicates, not new records
- unreadable cards are counted as processed and skipped
- the periodic daily-quota check
- the wall-clock limit
- an empty page stalls after the reload budget
- navigation failures propagate after the summary is sent
- periodic stability reloads, scroll-failure escalation and the scroll budget
"""

from __future__ import annotations

import itertools
from dataclasses import replace

import pytest

from ad_observatory.core.exceptions import NavigationError, PersistenceError
from ad_observatory.core.persistence import SqlPersistenceGateway
from ad_observatory.core.schemas import ProgressKind
from ad_observatory.extraction.config import EngineConfig
from ad_observatory.extraction.engine import (
    STOP_DAILY_QUOTA,
    STOP_ERROR,
    STOP_EXECUTION_TIME,
    STOP_SCROLL_BUDGET,
    STOP_STALLED,
    STOP_TARGET_REACHED,
    ExtractionEngine,
)
from tests.factories.pages import CardSpec, FakePageDriver, LazyScrollDriver, make_specs
from tests.factories.records import AdRecordFactory
from tests.factories.workers import RecordingSink

URL = "https://example.test/ads"


def _engine(driver, gateway, config: EngineConfig, sink: RecordingSink | None = None, **kwargs) -> ExtractionEngine:
    return ExtractionEngine(driver, gateway, sink or RecordingSink(), config, source="facebook", **kwargs)


async def _run(engine: ExtractionEngine, max_records: int = 100, daily_quota: int = 10_000, owner: str = "u1"):
    return await engine.run(URL, keyword="shoes", owner_id=owner, max_records=max_records, daily_quota=daily_quota)


@pytest.mark.asyncio
async def test_stops_at_max_records(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    sink = RecordingSink()
    driver = FakePageDriver(make_specs(25), page_size=10)

    summary = await _run(_engine(driver, gateway, engine_config, sink), max_records=12)

    assert summary.saved == 12
    assert summary.stop_reason == STOP_TARGET_REACHED
    assert summary.achieved is True
    assert [e.kind for e in sink.events] == [ProgressKind.RECORD_SAVED] * 12
    assert [e.saved for e in sink.events] == list(range(1, 13))
    assert sink.summary == summary
    assert gateway.count_today("u1") == 12
    assert driver.navigations == [URL]


@pytest.mark.asyncio
async def test_exhausted_page_finishes_as_stalled(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    sink = RecordingSink()
    driver = FakePageDriver(make_specs(25), page_size=10)

    summary = await _run(_engine(driver, gateway, engine_config, sink))

    assert summary.stop_reason == STOP_STALLED
    assert summary.saved == 25
    assert summary.achieved is False
    assert summary.found == summary.saved + summary.duplicates
    assert driver.reloads == engine_config.max_reloads
    assert gateway.count_today("u1") == 25


@pytest.mark.asyncio
async def test_known_records_are_duplicates(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    specs = make_specs(5)
    for spec in specs[:3]:
        gateway.save(
            AdRecordFactory.build(advertiser_name=spec.advertiser, description=spec.description),
            "u1",
        )
    sink = RecordingSink()

    summary = await _run(_engine(FakePageDriver(specs), gateway, engine_config, sink), max_records=2)

    assert summary.saved == 2
    assert summary.duplicates == 3
    kinds = [e.kind for e in sink.events]
    assert kinds[:3] == [ProgressKind.DUPLICATE_SKIPPED] * 3
    assert kinds[3:] == [ProgressKind.RECORD_SAVED] * 2


@pytest.mark.asyncio
async def test_unreadable_cards_are_skipped(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    specs = make_specs(3)
    specs.insert(1, CardSpec("", "", broken=True))
    engine = _engine(FakePageDriver(specs), gateway, engine_config)

    summary = await _run(engine, max_records=3)

    assert summary.saved == 3
    assert summary.processed == 4
    assert engine.stats.parse_errors == 1


@pytest.mark.asyncio
async def test_persistence_errors_do_not_stop_the_run(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    real_save = gateway.save
    calls = itertools.count()

    def flaky_save(record, owner_id):
        if next(calls) == 0:
            raise PersistenceError("connection reset")
        return real_save(record, owner_id)

    gateway.save = flaky_save  # type: ignore[method-assign]
    engine = _engine(FakePageDriver(make_specs(5)), gateway, engine_config)

    summary = await _run(engine, max_records=3)

    assert summary.saved == 3
    assert engine.stats.persistence_errors == 1


@pytest.mark.asyncio
async def test_daily_quota_stops_the_run(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    for _ in range(5):
        gateway.save(AdRecordFactory.build(), "u1")
    config = replace(engine_config, batch_size=10, quota_check_interval=1)

    summary = await _run(_engine(FakePageDriver(make_specs(40), page_size=20), gateway, config), daily_quota=8)

    assert summary.stop_reason == STOP_DAILY_QUOTA
    assert summary.saved == 10


@pytest.mark.asyncio
async def test_execution_time_limit(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    ticks = itertools.count(step=100)
    engine = _engine(FakePageDriver(make_specs(5)), gateway, engine_config, clock=lambda: next(ticks))

    summary = await _run(engine)

    assert summary.stop_reason == STOP_EXECUTION_TIME
    assert summary.saved == 0


@pytest.mark.asyncio
async def test_empty_page_stalls_after_reloads(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    driver = FakePageDriver([])

    summary = await _run(_engine(driver, gateway, engine_config))

    assert summary.stop_reason == STOP_STALLED
    assert summary.saved == 0
    assert driver.reloads == engine_config.max_reloads


@pytest.mark.asyncio
async def test_resume_cutoff_scrolls_before_extracting(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    from datetime import date  # noqa: PLC0415

    driver = FakePageDriver(make_specs(30), page_size=10)
    engine = _engine(driver, gateway, engine_config)

    summary = await engine.run(
        URL, keyword="shoes", owner_id="u1", max_records=5, daily_quota=100, resume_cutoff=date(2024, 1, 1)
    )

    assert summary.saved == 5
    assert driver.visible > 10


@pytest.mark.asyncio
async def test_navigation_failure_propagates_with_summary(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    sink = RecordingSink()
    driver = FakePageDriver(make_specs(3), fail_navigation=True)

    with pytest.raises(NavigationError):
        await _run(_engine(driver, gateway, engine_config, sink))

    assert sink.summary is not None
    assert sink.summary.stop_reason == STOP_ERROR
    assert sink.summary.saved == 0


# ---------------------------------------------------------------------------
# Reloads and scroll budget
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stability_reload_revisits_the_list(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    config = replace(engine_config, batch_size=5, stability_reload_interval=5)
    driver = FakePageDriver(make_specs(12), page_size=10)
    engine = _engine(driver, gateway, config)

    summary = await _run(engine, max_records=8)

    assert summary.stop_reason == STOP_TARGET_REACHED
    assert summary.saved == 8
    assert summary.duplicates == 5
    assert driver.reloads == 1
    assert engine.stats.reloads == 0


@pytest.mark.asyncio
async def test_unproductive_scrolls_escalate_to_a_reload(
    gateway: SqlPersistenceGateway, engine_config: EngineConfig
) -> None:
    config = replace(engine_config, max_scroll_fails=3, max_reloads=1)
    driver = LazyScrollDriver(make_specs(5), reveal_on="never")

    summary = await _run(_engine(driver, gateway, config))

    # One failed scroll after the first batch, then max_scroll_fails in a row.
    assert driver.top_scrolls_at_reload == [1 + config.max_scroll_fails]
    assert driver.reloads == 1
    assert summary.stop_reason == STOP_STALLED
    assert (summary.saved, summary.duplicates) == (5, 5)


@pytest.mark.asyncio
async def test_scroll_budget_ends_the_run(gateway: SqlPersistenceGateway, engine_config: EngineConfig) -> None:
    config = replace(engine_config, max_scroll_attempts=3)
    driver = LazyScrollDriver(make_specs(5), reveal_on="never", height="growing")
    engine = _engine(driver, gateway, config)

    summary = await _run(engine, max_records=50)

    assert summary.stop_reason == STOP_SCROLL_BUDGET
    assert summary.saved == 5
    assert summary.achieved is False
    assert engine.stats.scroll_attempts == 3
    assert driver.reloads == 0
