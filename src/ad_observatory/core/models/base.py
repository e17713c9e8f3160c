"""SQLAlchemy declarative base and shared mixins for all ORM models.

Provides:
- Base: the DeclarativeBase subclass all models inherit from
- UTCDateTime: timezone-aware datetime column type that also works on SQLite
- TimestampMixin: created_at / updated_at columns with application-side defaults
- utcnow: the clock used for every timestamp the application writes
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(sa.types.TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    PostgreSQL stores ``TIMESTAMP WITH TIME ZONE`` natively.  SQLite drops
    the offset, so values read back without ``tzinfo`` are re-tagged as UTC.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Shared declarative base for all Ad Observatory models."""

    # Portable UUID and datetime types so the same models run on PostgreSQL and SQLite.
    type_annotation_map = {
        uuid.UUID: sa.Uuid(as_uuid=True),
        datetime: UTCDateTime(),
    }


class TimestampMixin:
    """Adds created_at and updated_at columns.

    ``updated_at`` is refreshed by the ORM ``onupdate`` hook; bulk UPDATE
    statements issued by the persistence gateway set it explicitly.
    """

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
