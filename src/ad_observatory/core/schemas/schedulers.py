"""Pydantic schemas for recurring schedules and scheduler statistics."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SchedulerRead(BaseModel):
    """Full representation of a persisted schedule."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: str
    keyword: str
    cron_expression: str
    is_active: bool
    max_records: int
    daily_quota: int
    last_run: Optional[datetime]
    next_run: Optional[datetime]
    total_runs: int
    successful_runs: int
    failed_runs: int
    created_at: datetime
    updated_at: datetime


class ActiveJob(BaseModel):
    """One live cron job registered with the job scheduler."""

    schedule_id: str
    next_fire_time: Optional[datetime]


class SchedulerStats(BaseModel):
    """Process-lifetime counters reported by ``JobScheduler.stats``.

    Attributes:
        jobs_created: Executions started since the scheduler started.
        jobs_completed: Executions whose mission completed.
        jobs_failed: Executions recorded as failed.
        success_rate: ``jobs_completed / (jobs_completed + jobs_failed)`` as a
            percentage, 0 when nothing has finished.
        active_jobs: Live cron jobs.
        running_executions: Executions in flight.
        memory_mb: Resident memory of the service process.
        uptime_seconds: Seconds since the scheduler started.
    """

    jobs_created: int
    jobs_completed: int
    jobs_failed: int
    success_rate: float
    active_jobs: int
    running_executions: int
    memory_mb: float
    uptime_seconds: float
