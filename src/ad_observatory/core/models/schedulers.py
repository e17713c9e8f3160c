"""SQLAlchemy ORM model for recurring mission schedules."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from ad_observatory.core.models.base import Base, TimestampMixin


class Scheduler(TimestampMixin, Base):
    """A cron trigger that creates a mission for one keyword on every tick.

    At most one schedule exists per ``(owner_id, keyword)``; adding a schedule
    for an existing pair reconfigures and reactivates it.

    Attributes:
        id: UUID primary key.
        owner_id: Owner the schedule belongs to.
        keyword: Keyword every spawned mission searches for.
        cron_expression: Standard 5-field cron expression.
        is_active: Whether the live cron job is armed.
        max_records: Cap passed to every spawned mission.
        daily_quota: Daily quota passed to every spawned mission.
        last_run: When the most recent execution finished.
        next_run: Next fire time; recomputed after every execution.
        total_runs: Executions attempted (each counts once, regardless of retries).
        successful_runs: Executions whose mission completed.
        failed_runs: Executions that failed after retries, timed out, or were stopped.
    """

    __tablename__ = "schedulers"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    keyword: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    cron_expression: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    max_records: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    daily_quota: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    last_run: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    next_run: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    total_runs: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    successful_runs: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    failed_runs: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    __table_args__ = (
        sa.UniqueConstraint("owner_id", "keyword", name="uq_schedulers_owner_keyword"),
        sa.Index("idx_schedulers_is_active", "is_active"),
    )
