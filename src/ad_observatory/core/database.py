"""SQLAlchemy engine and session factory.

Provides:
- build_engine():       create an engine for a DSN (PostgreSQL or SQLite)
- build_sessionmaker(): session factory bound to an engine
- get_sessionmaker():   the process-wide factory, built lazily from settings
- get_sync_session():   context manager yielding a Session
- init_schema():        create all tables (development and tests)
- Base.metadata:        re-exported so callers can reference it without
                        importing individual models

The service process and every worker process open their own engine; all
access is synchronous and short-lived.  Event-loop code reaches it through
``AsyncPersistenceGateway``, which runs each call on a store thread; that is
why SQLite connections are opened with ``check_same_thread=False``.

Connection pool for PostgreSQL is sized for one service process plus a
handful of workers:
- pool_size=5:          baseline connections held open
- max_overflow=10:      burst connections allowed above pool_size
- pool_pre_ping=True:   verify connection health before handing out
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# ---------------------------------------------------------------------------
# Import Base so callers can do:
#   from ad_observatory.core.database import Base
# without importing individual model files.
# ---------------------------------------------------------------------------
from ad_observatory.core.models import Base


def build_engine(database_url: str) -> Engine:
    """Create a synchronous engine from a database URL.

    Separated from module-level code so tests can call this with a test DSN
    without importing settings.  In-memory SQLite URLs get a single shared
    connection so every session sees the same database.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory bound to *engine*."""
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache
def get_sessionmaker() -> sessionmaker[Session]:
    """Return the process-wide session factory.

    The settings import is deferred so that test code can patch the
    environment before the engine is created.
    """
    from ad_observatory.config.settings import get_settings  # noqa: PLC0415

    return build_sessionmaker(build_engine(get_settings().database_url))


@contextmanager
def get_sync_session(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a synchronous SQLAlchemy Session.

    The session is rolled back on exception and always closed.  The caller
    commits explicitly.

    Usage::

        with get_sync_session() as session:
            session.execute(update(Mission).where(...).values(...))
            session.commit()

    Args:
        factory: Session factory to use.  Defaults to :func:`get_sessionmaker`.
    """
    session = (factory or get_sessionmaker())()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_schema(engine: Engine) -> None:
    """Create every table known to ``Base.metadata`` that does not exist yet."""
    Base.metadata.create_all(engine)
