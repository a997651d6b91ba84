"""Cron scheduling — APScheduler triggers over file-backed agent jobs."""

from cronbot.core.cron.expr import get_next_run_time, validate_cron
from cronbot.core.cron.scheduler import AgentScheduler
from cronbot.core.cron.types import CronValidation, SchedulerStatus

__all__ = [
    "AgentScheduler",
    "CronValidation",
    "SchedulerStatus",
    "get_next_run_time",
    "validate_cron",
]
