"""Pydantic data models — scheduled agents, run records, API bodies.

On disk and over the API every model uses camelCase keys
(``userId``, ``nextRunAt`` ...); in Python the snake_case field names are used.
Both spellings are accepted on input.
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

AgentStatus = Literal["active", "paused", "error"]
RunStatus = Literal["running", "success", "error"]
OutcomeType = Literal["action", "response", "error"]

AGENT_STATUSES: tuple[str, ...] = ("active", "paused", "error")

MAX_SUMMARY_LINES = 5
MAX_RECENT_TOPICS = 10
MAX_RECENT_FILES = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _assume_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# Naive timestamps read from disk or the API are taken as UTC
Timestamp = Annotated[datetime, AfterValidator(_assume_utc)]


def new_run_id() -> str:
    """``run_<epoch ms>_<8 hex>``."""
    return f"run_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class CamelModel(BaseModel):
    """Base model: camelCase aliases, populate by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """JSON-safe dict with camelCase keys (file and API shape)."""
        return self.model_dump(mode="json", by_alias=True)


# ════════════════════════════════════════════════════════════
# SCHEDULED AGENT
# ════════════════════════════════════════════════════════════


class Schedule(CamelModel):
    cron: str
    timezone: str = "UTC"
    human_readable: str = ""

    @model_validator(mode="after")
    def _default_human_readable(self) -> Schedule:
        if not self.human_readable:
            self.human_readable = self.cron
        return self


class AgentMemory(CamelModel):
    """Rolling cross-run context fed back into future instructions."""

    summary: str = ""
    recent_topics: list[str] = Field(default_factory=list)
    recent_files: list[str] = Field(default_factory=list)
    last_updated: Timestamp | None = None

    def bounded(self) -> AgentMemory:
        """Copy with summary lines and recent lists cut to their limits."""
        lines = [line for line in self.summary.splitlines() if line.strip()]
        return self.model_copy(
            update={
                "summary": "\n".join(lines[-MAX_SUMMARY_LINES:]),
                "recent_topics": self.recent_topics[-MAX_RECENT_TOPICS:],
                "recent_files": self.recent_files[-MAX_RECENT_FILES:],
            }
        )


class AgentPermissions(CamelModel):
    pre_authorized: bool = True
    tools: list[str] = Field(default_factory=list)


class ScheduledAgent(CamelModel):
    """One persisted job definition."""

    id: str
    user_id: str
    name: str
    description: str = ""
    instructions: str
    schedule: Schedule
    tool_groups: list[str] = Field(default_factory=list)
    max_runs_per_hour: int = 5
    max_tool_calls: int | None = None
    workspace_path: str = ""
    memory: AgentMemory = Field(default_factory=AgentMemory)
    permissions: AgentPermissions = Field(default_factory=AgentPermissions)
    status: AgentStatus = "active"
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp = Field(default_factory=utcnow)
    last_run_at: Timestamp | None = None
    next_run_at: Timestamp | None = None
    run_count: int = 0
    error_count: int = 0
    last_error: str | None = None


# ════════════════════════════════════════════════════════════
# RUN RECORD
# ════════════════════════════════════════════════════════════


class RunAction(CamelModel):
    """One paired tool_use / tool_result."""

    tool: str
    input: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    is_error: bool = False
    timestamp: Timestamp = Field(default_factory=utcnow)
    duration_ms: int = 0


class ExternalAction(CamelModel):
    system: str
    action: str
    url: str | None = None


class RunOutcome(CamelModel):
    type: OutcomeType = "response"
    summary: str = ""
    details: str | None = None
    external_actions: list[ExternalAction] = Field(default_factory=list)


class RunUsage(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0


class RunErrorInfo(CamelModel):
    message: str
    type: str = ""
    stack: str | None = None
    failed_action: str | None = None


class RunRecord(CamelModel):
    """One execution attempt. Immutable once saved."""

    id: str = Field(default_factory=new_run_id)
    agent_id: str
    started_at: Timestamp = Field(default_factory=utcnow)
    completed_at: Timestamp | None = None
    duration_ms: int = 0
    status: RunStatus = "running"
    trigger: str = "cron"
    attempt: int = 1
    actions: list[RunAction] = Field(default_factory=list)
    files_created: list[str] = Field(default_factory=list)
    outcome: RunOutcome | None = None
    usage: RunUsage | None = None
    error: RunErrorInfo | None = None


class RunStats(CamelModel):
    total_runs: int = 0
    success_count: int = 0
    error_count: int = 0
    average_duration_ms: int = 0
    last_run: RunRecord | None = None


# ════════════════════════════════════════════════════════════
# API REQUEST BODIES
# ════════════════════════════════════════════════════════════


class AgentCreate(CamelModel):
    id: str | None = None
    name: str
    description: str = ""
    instructions: str
    schedule: Schedule
    tool_groups: list[str]
    max_runs_per_hour: int = 5
    max_tool_calls: int | None = None
    permissions: AgentPermissions = Field(default_factory=AgentPermissions)
    status: AgentStatus = "active"


class AgentUpdate(CamelModel):
    name: str | None = None
    description: str | None = None
    instructions: str | None = None
    schedule: Schedule | None = None
    tool_groups: list[str] | None = None
    max_runs_per_hour: int | None = None
    max_tool_calls: int | None = None
    permissions: AgentPermissions | None = None


class StatusUpdate(BaseModel):
    status: str


class TriggerCreate(CamelModel):
    id: str
    type: str
    agent_id: str
    config: dict[str, Any] = Field(default_factory=dict)
