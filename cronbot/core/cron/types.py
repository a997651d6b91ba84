"""Scheduler result and status types."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from cronbot.store.models import CamelModel


class CronValidation(CamelModel):
    valid: bool
    next_run: datetime | None = None
    error: str | None = None


class ScheduledJobInfo(CamelModel):
    agent_id: str
    scheduled: bool = True
    running: bool = False


class SchedulerStatus(CamelModel):
    total_jobs: int = 0
    running_jobs: int = 0
    jobs: list[ScheduledJobInfo] = Field(default_factory=list)
