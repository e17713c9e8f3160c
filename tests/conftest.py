"""Shared pytest fixtures for Ad Observatory tests.

Fixture summary
---------------
settings : Settings with zero backoff and short timeouts.
engine : In-memory SQLite engine with every table created.
gateway : SqlPersistenceGateway bound to ``engine``.
engine_config : EngineConfig with zero pauses and small stall budgets.

Every test runs against a private in-memory SQLite database, so no external
infrastructure is required.
"""

from __future__ import annotations

import os
from collections.abc import Generator

import pytest

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set required env vars before any application modules are imported so that
# Settings() does not raise a ValidationError during collection.

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "DATABASE_URL": "sqlite://",
    "LOG_LEVEL": "INFO",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

# ---------------------------------------------------------------------------
# Application imports (after env bootstrap)
# ---------------------------------------------------------------------------

from sqlalchemy import Engine  # noqa: E402

from ad_observatory.config.settings import Settings, get_settings  # noqa: E402
from ad_observatory.core.database import build_engine, build_sessionmaker, init_schema  # noqa: E402
from ad_observatory.core.persistence import SqlPersistenceGateway  # noqa: E402
from ad_observatory.extraction.config import EngineConfig  # noqa: E402

# Clear the lru_cache so Settings() re-reads from the patched environment.
get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for tests: no retry backoff, in-process workers."""
    return Settings(
        database_url="sqlite://",
        timezone="UTC",
        worker_mode="inprocess",
        worker_kill_grace_seconds=1.0,
        scheduler_execution_timeout_seconds=5.0,
        scheduler_max_attempts=2,
        scheduler_retry_base_seconds=0.0,
        recovery_grace_seconds=60.0,
        default_max_records=100,
        default_daily_quota=1_000,
    )


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine tunables with every pause set to zero and small stall budgets."""
    return EngineConfig(
        batch_size=10,
        max_scroll_attempts=200,
        max_execution_seconds=60,
        stability_reload_interval=1_000_000,
        quota_check_interval=1,
        max_empty_polls=2,
        max_scroll_fails=2,
        max_reloads=1,
        resource_log_interval=5,
        poll_interval_ms=0,
        poll_max_wait_ms=0,
        jiggle_pause_ms=0,
        jiggle_settle_ms=0,
        reset_pause_ms=0,
        reset_settle_ms=0,
        scroll_fail_pause_ms=0,
        reload_settle_ms=0,
        navigation_settle_ms=0,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """Fresh in-memory database per test."""
    db_engine = build_engine("sqlite://")
    init_schema(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def gateway(engine: Engine) -> SqlPersistenceGateway:
    return SqlPersistenceGateway(build_sessionmaker(engine), timezone="UTC")
