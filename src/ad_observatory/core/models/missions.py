"""SQLAlchemy ORM model for extraction missions.

A ``Mission`` is one execution of the extraction engine for a keyword and an
owner.  It is created already running by the supervisor, its counters are
advanced while the worker streams progress, and its status moves exactly once
into a terminal value.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from ad_observatory.core.models.base import Base, TimestampMixin, utcnow

MISSION_RUNNING = "running"
MISSION_COMPLETED = "completed"
MISSION_FAILED = "failed"
MISSION_STOPPED = "stopped"

TERMINAL_STATUSES: frozenset[str] = frozenset(
    {MISSION_COMPLETED, MISSION_FAILED, MISSION_STOPPED}
)


class Mission(TimestampMixin, Base):
    """One run of the extraction engine.

    Attributes:
        id: UUID primary key.
        keyword: Search keyword the mission extracts for.
        status: ``"running"``, ``"completed"``, ``"failed"`` or ``"stopped"``.
        started_at: When the mission was created.
        ended_at: When the mission reached a terminal status.
        found: Records seen (saved plus duplicates).
        new_records: Records persisted by this mission.
        duplicates_skipped: Records rejected as duplicates.
        processed: Records the worker has handled.
        max_records: Cap on saved records.
        daily_quota: Owner's daily persisted-record quota at launch time.
        owner_id: Owner the mission belongs to.
        source: Source tag of the extracted records.
        region: Region filter the mission ran against.
        error: Failure reason for ``"failed"`` missions.
        execution_id: Optional external correlation id (e.g. the schedule run).
        created_at: Row creation time.
        updated_at: Bumped on every mutation.
    """

    __tablename__ = "missions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    keyword: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        default=MISSION_RUNNING,
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Progress counters
    found: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    new_records: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    duplicates_skipped: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    processed: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    # Limits
    max_records: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    daily_quota: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    owner_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    source: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    region: Mapped[Optional[str]] = mapped_column(sa.String(10), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    execution_id: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)

    __table_args__ = (
        sa.Index("idx_missions_owner_id", "owner_id"),
        sa.Index("idx_missions_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
