"""SQLAlchemy ORM models for Ad Observatory.

All models are imported here so that:
1. ``init_schema()`` sees every table via ``Base.metadata``.
2. Application code can do ``from ad_observatory.core.models import Mission``
   without knowing which sub-module a model lives in.
"""

from __future__ import annotations

from ad_observatory.core.models.base import Base, TimestampMixin, UTCDateTime, utcnow
from ad_observatory.core.models.missions import (
    MISSION_COMPLETED,
    MISSION_FAILED,
    MISSION_RUNNING,
    MISSION_STOPPED,
    TERMINAL_STATUSES,
    Mission,
)
from ad_observatory.core.models.records import ExtractedRecord, compute_dedup_hash
from ad_observatory.core.models.schedulers import Scheduler

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    # Missions
    "Mission",
    "MISSION_RUNNING",
    "MISSION_COMPLETED",
    "MISSION_FAILED",
    "MISSION_STOPPED",
    "TERMINAL_STATUSES",
    # Records
    "ExtractedRecord",
    "compute_dedup_hash",
    # Schedules
    "Scheduler",
]
