"""Pydantic schemas for missions, mission limits, filters and worker invocation.

``WorkerInvocation`` is the contract between the supervisor and one extraction
worker.  It renders to the worker CLI's argument vector for subprocess workers
and is passed as-is to in-process workers.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ad_observatory.core.exceptions import InvalidLimitsError


class MissionLimits(BaseModel):
    """Caller-supplied mission limits.  ``None`` means "use the configured default"."""

    max_records: Optional[int] = None
    daily_quota: Optional[int] = None

    def resolve(
        self,
        default_max_records: int,
        default_daily_quota: int,
        ceiling: int,
    ) -> "ResolvedLimits":
        """Fill in defaults and validate both limits.

        Raises:
            InvalidLimitsError: If either limit is below 1 or above *ceiling*.
        """
        max_records = self.max_records if self.max_records is not None else default_max_records
        daily_quota = self.daily_quota if self.daily_quota is not None else default_daily_quota
        for name, value in (("max_records", max_records), ("daily_quota", daily_quota)):
            if value < 1 or value > ceiling:
                raise InvalidLimitsError(
                    f"{name} must be between 1 and {ceiling:,}, got {value}"
                )
        return ResolvedLimits(max_records=max_records, daily_quota=daily_quota)


class ResolvedLimits(BaseModel):
    """Validated limits attached to a mission or schedule."""

    model_config = ConfigDict(frozen=True)

    max_records: int
    daily_quota: int


class FilterSet(BaseModel):
    """Search filters passed to the extraction engine.

    Attributes:
        language: Content language; ``"en"`` switches to unordered keyword search.
        advertiser: Restrict to one advertiser name; ``"all"`` means no restriction.
        platforms: Publisher platforms (e.g. ``["facebook", "instagram"]``).
        media_type: ``"all"``, ``"image"``, ``"video"``, ...
        active_status: ``"active"``, ``"inactive"`` or ``"all"``.
        start_date: Earliest ad start date.
        end_date: Latest ad start date.
        region: ISO 3166-1 alpha-2 region code.
    """

    language: Optional[str] = None
    advertiser: Optional[str] = None
    platforms: List[str] = Field(default_factory=list)
    media_type: Optional[str] = None
    active_status: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    region: Optional[str] = None

    @property
    def has_date_range(self) -> bool:
        return self.start_date is not None or self.end_date is not None

    def is_empty(self) -> bool:
        """Return ``True`` when no filter other than the region is set."""
        return not (
            self.language
            or self.advertiser
            or self.platforms
            or self.media_type
            or self.active_status
            or self.has_date_range
        )


class WorkerInvocation(BaseModel):
    """Everything one extraction worker needs to run a mission."""

    keyword: str
    max_records: int
    daily_quota: int
    filters: FilterSet = Field(default_factory=FilterSet)
    mission_id: Optional[uuid.UUID] = None
    owner_id: Optional[str] = None
    resume_date: Optional[date] = None

    def to_argv(self) -> list[str]:
        """Render the invocation as worker CLI arguments (without the program name).

        Options use the ``--name=value`` form and the keyword follows ``--``,
        so values starting with ``-`` are never read as options.
        """
        f = self.filters
        options: list[tuple[str, object]] = [
            ("max-records", self.max_records),
            ("daily-quota", self.daily_quota),
            ("mission-id", self.mission_id),
            ("owner-id", self.owner_id),
            ("language", f.language),
            ("advertiser", f.advertiser),
            ("platforms", ",".join(f.platforms)),
            ("media-type", f.media_type),
            ("active-status", f.active_status),
            ("start-date", f.start_date.isoformat() if f.start_date else None),
            ("end-date", f.end_date.isoformat() if f.end_date else None),
            ("region", f.region),
            ("resume-date", self.resume_date.isoformat() if self.resume_date else None),
        ]
        argv = [f"--{name}={value}" for name, value in options if value not in (None, "")]
        return [*argv, "--", self.keyword]


class MissionRead(BaseModel):
    """Full representation of a persisted mission."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    keyword: str
    status: str
    started_at: datetime
    ended_at: Optional[datetime]
    found: int
    new_records: int
    duplicates_skipped: int
    processed: int
    max_records: int
    daily_quota: int
    owner_id: str
    source: str
    region: Optional[str]
    error: Optional[str]
    execution_id: Optional[str]
    updated_at: datetime


class ActiveMission(BaseModel):
    """Live view of one running mission, as returned by ``MissionSupervisor.status``."""

    mission_id: uuid.UUID
    keyword: str
    status: str
    found: int
    new_records: int
    duplicates_skipped: int
    processed: int
    max_records: int
    started_at: datetime
    updated_at: datetime


class MissionStatusReport(BaseModel):
    """All active missions of one owner."""

    owner_id: str
    is_running: bool
    missions: List[ActiveMission] = Field(default_factory=list)
