"""FastAPI dependency injection — pull shared instances from app.state."""

from __future__ import annotations

from fastapi import Header, Request

from cronbot.agent.permissions import ToolGroupRegistry
from cronbot.core.config.schema import Config
from cronbot.core.cron.scheduler import AgentScheduler
from cronbot.core.triggers.router import TriggerRouter
from cronbot.store.agents import AgentStore
from cronbot.store.runs import RunHistory


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_agent_store(request: Request) -> AgentStore:
    return request.app.state.agent_store


def get_run_history(request: Request) -> RunHistory:
    return request.app.state.run_history


def get_tool_groups(request: Request) -> ToolGroupRegistry:
    return request.app.state.tool_groups


def get_scheduler(request: Request) -> AgentScheduler:
    return request.app.state.scheduler


def get_trigger_router(request: Request) -> TriggerRouter:
    return request.app.state.trigger_router


async def get_current_user(
    request: Request,
    x_user_id: str | None = Header(None),
) -> str:
    """User id from the ``X-User-Id`` header, else the configured owner."""
    if x_user_id:
        return x_user_id
    config: Config = request.app.state.config
    return config.owner.username or "default"
