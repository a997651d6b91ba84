"""Service wiring — one explicit instance of each component, shared by API and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from cronbot.agent.engine import Engine
from cronbot.agent.executor import AgentExecutor
from cronbot.agent.permissions import ToolGroupRegistry
from cronbot.core.config.schema import Config
from cronbot.core.cron.scheduler import AgentScheduler
from cronbot.core.triggers.router import TriggerRouter
from cronbot.store.agents import AgentStore
from cronbot.store.runs import RunHistory


@dataclass
class Services:
    agent_store: AgentStore
    run_history: RunHistory
    tool_groups: ToolGroupRegistry
    executor: AgentExecutor
    scheduler: AgentScheduler
    trigger_router: TriggerRouter


def _log_event(event: dict[str, Any]) -> None:
    logger.debug(f"{event['type']}: agent={event.get('agentId')} run={event.get('runId')}")


def build_services(config: Config, engine: Engine | None = None) -> Services:
    """Wire stores, executor, scheduler and trigger router from config.

    Parameters
    ----------
    config : Config
        Application config.
    engine : Engine, optional
        Agent execution engine. Defaults to :class:`LiteLLMEngine`.
    """
    if engine is None:
        from cronbot.core.providers.litellm import LiteLLMEngine

        engine = LiteLLMEngine(config)

    agent_store = AgentStore(config.agents_path, config.workspaces_path)
    run_history = RunHistory(config.runs_path)
    tool_groups = ToolGroupRegistry.from_yaml(config.tool_groups_path)

    executor = AgentExecutor(
        agent_store,
        run_history,
        engine,
        tool_groups,
        timeout_s=config.executor.timeout_s,
        max_tool_calls=config.executor.max_tool_calls,
        max_retries=config.executor.max_retries,
        backoff_base_s=config.executor.backoff_base_s,
    )
    scheduler = AgentScheduler(
        agent_store, executor, config=config.scheduler, emit_event=_log_event
    )
    trigger_router = TriggerRouter(runner=scheduler)
    scheduler.trigger_router = trigger_router

    return Services(
        agent_store=agent_store,
        run_history=run_history,
        tool_groups=tool_groups,
        executor=executor,
        scheduler=scheduler,
        trigger_router=trigger_router,
    )


def hydrate_permissions(store: AgentStore, tool_groups: ToolGroupRegistry) -> int:
    """Pre-authorize active agents that have no tool list yet. Returns the count."""
    updated = 0
    for agent in store.get_all_active_agents():
        if agent.permissions.tools:
            continue
        tools = tool_groups.get_tools(agent.tool_groups)
        if not tools:
            continue
        store.update_stats(
            agent.id,
            {"permissions": {"pre_authorized": True, "tools": tools}},
        )
        logger.info(f"Pre-authorized {len(tools)} tools for {agent.name}")
        updated += 1
    return updated
