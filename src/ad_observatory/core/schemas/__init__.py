"""Pydantic schemas shared by the extraction engine and the orchestration layer."""

from __future__ import annotations

from ad_observatory.core.schemas.missions import (
    ActiveMission,
    FilterSet,
    MissionLimits,
    MissionRead,
    MissionStatusReport,
    ResolvedLimits,
    WorkerInvocation,
)
from ad_observatory.core.schemas.progress import ExtractionSummary, ProgressEvent, ProgressKind
from ad_observatory.core.schemas.records import AdRecord
from ad_observatory.core.schemas.schedulers import ActiveJob, SchedulerRead, SchedulerStats

__all__ = [
    "ActiveJob",
    "ActiveMission",
    "AdRecord",
    "ExtractionSummary",
    "FilterSet",
    "MissionLimits",
    "MissionRead",
    "MissionStatusReport",
    "ProgressEvent",
    "ProgressKind",
    "ResolvedLimits",
    "SchedulerRead",
    "SchedulerStats",
    "WorkerInvocation",
]
