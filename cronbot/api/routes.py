"""API routes — agents, run history, scheduler status, triggers, webhooks."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from loguru import logger

from cronbot import __version__
from cronbot.agent.executor import ExecutionResult
from cronbot.agent.permissions import ToolGroupRegistry
from cronbot.api.deps import (
    get_agent_store,
    get_current_user,
    get_run_history,
    get_scheduler,
    get_tool_groups,
    get_trigger_router,
)
from cronbot.core.cron.scheduler import AgentScheduler
from cronbot.core.triggers.router import TriggerRouter
from cronbot.store.agents import AgentStore
from cronbot.store.models import (
    AgentCreate,
    AgentUpdate,
    ScheduledAgent,
    StatusUpdate,
    TriggerCreate,
)
from cronbot.store.runs import RunHistory

router = APIRouter()


def _require_agent(store: AgentStore, user_id: str, agent_id: str) -> ScheduledAgent:
    agent = store.get_agent(user_id, agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent not found: {agent_id}")
    return agent


def _result_json(result: ExecutionResult | None) -> dict[str, Any]:
    if result is None:
        return {"success": False, "skipped": True, "skipReason": "not_run"}
    if isinstance(result, ExecutionResult):
        return result.to_dict()
    return result


def _sync_schedule(scheduler: AgentScheduler, agent: ScheduledAgent) -> None:
    if agent.status == "active":
        scheduler.reschedule_agent(agent)
    else:
        scheduler.unschedule_agent(agent.id)


@router.get("/health")
async def health(scheduler: AgentScheduler = Depends(get_scheduler)):
    """Health check."""
    return {
        "status": "ok",
        "version": __version__,
        "scheduledJobs": scheduler.get_status().total_jobs,
    }


# ════════════════════════════════════════════════════════════
# AGENTS
# ════════════════════════════════════════════════════════════


@router.get("/agents")
async def list_agents(
    status: str | None = Query(default=None),
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
):
    """List the user's agents, most recently updated first."""
    return [a.to_json_dict() for a in store.list_agents(user_id, status=status)]


@router.post("/agents", status_code=201)
async def create_agent(
    body: AgentCreate,
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    tool_groups: ToolGroupRegistry = Depends(get_tool_groups),
    scheduler: AgentScheduler = Depends(get_scheduler),
):
    """Create an agent and schedule it if active.

    Without explicit ``permissions.tools`` the agent is pre-authorized for
    every tool of its tool groups.
    """
    data = body.model_dump(exclude_unset=True)
    permissions = body.permissions.model_dump()
    if not permissions["tools"]:
        permissions["tools"] = tool_groups.get_tools(body.tool_groups)
    data["permissions"] = permissions

    agent = store.create_agent(user_id, data)
    scheduler.schedule_agent(agent)
    return (store.get_agent(user_id, agent.id) or agent).to_json_dict()


@router.get("/agents/{agent_id}")
async def get_agent(
    agent_id: str,
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    scheduler: AgentScheduler = Depends(get_scheduler),
):
    agent = _require_agent(store, user_id, agent_id)
    return {
        **agent.to_json_dict(),
        "isScheduled": scheduler.is_scheduled(agent_id),
        "isRunning": scheduler.is_running(agent_id),
        "workspaceFiles": store.get_workspace_files(agent_id),
    }


@router.patch("/agents/{agent_id}")
async def update_agent(
    agent_id: str,
    body: AgentUpdate,
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    tool_groups: ToolGroupRegistry = Depends(get_tool_groups),
    scheduler: AgentScheduler = Depends(get_scheduler),
):
    """Partial update. Schedule changes re-register the cron job.

    New ``toolGroups`` without explicit ``permissions`` re-derive the
    pre-authorized tool list from the groups.
    """
    updates = body.model_dump(exclude_unset=True)
    if body.tool_groups is not None and "permissions" not in updates:
        updates["permissions"] = {
            "pre_authorized": True,
            "tools": tool_groups.get_tools(body.tool_groups),
        }
    agent = store.update_agent(user_id, agent_id, updates)
    if "schedule" in body.model_fields_set:
        _sync_schedule(scheduler, agent)
    return (store.get_agent(user_id, agent_id) or agent).to_json_dict()


@router.delete("/agents/{agent_id}")
async def delete_agent(
    agent_id: str,
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    history: RunHistory = Depends(get_run_history),
    scheduler: AgentScheduler = Depends(get_scheduler),
    trigger_router: TriggerRouter = Depends(get_trigger_router),
):
    """Delete an agent with its workspace, run history and triggers."""
    _require_agent(store, user_id, agent_id)
    scheduler.unschedule_agent(agent_id)
    store.delete_agent(user_id, agent_id)
    deleted_runs = history.delete_agent_history(agent_id)
    for trigger in trigger_router.get_triggers_for_agent(agent_id):
        trigger_router.unregister(trigger.id)
    return {"success": True, "agentId": agent_id, "deletedRuns": deleted_runs}


@router.post("/agents/{agent_id}/status")
async def set_status(
    agent_id: str,
    body: StatusUpdate,
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    scheduler: AgentScheduler = Depends(get_scheduler),
):
    """Pause, resume or flag an agent."""
    agent = store.toggle_status(user_id, agent_id, body.status)
    _sync_schedule(scheduler, agent)
    return (store.get_agent(user_id, agent_id) or agent).to_json_dict()


@router.post("/agents/{agent_id}/run", status_code=202)
async def run_agent(
    agent_id: str,
    request: Request,
    wait: bool = Query(default=False),
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    scheduler: AgentScheduler = Depends(get_scheduler),
):
    """Manual run. Starts in the background unless ``?wait=true``."""
    _require_agent(store, user_id, agent_id)
    if scheduler.is_running(agent_id):
        raise HTTPException(status_code=409, detail=f"Agent {agent_id} is already running")

    if wait:
        return _result_json(await scheduler.trigger_agent(agent_id))

    task = asyncio.create_task(scheduler.trigger_agent(agent_id))
    tasks: set[asyncio.Task] = request.app.state.background_tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return {
        "agentId": agent_id,
        "success": True,
        "message": "Agent execution started in background",
    }


@router.get("/agents/{agent_id}/runs")
async def list_runs(
    agent_id: str,
    limit: int = Query(default=30, ge=1, le=500),
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    history: RunHistory = Depends(get_run_history),
):
    """Run records, most recent first."""
    _require_agent(store, user_id, agent_id)
    return [r.to_json_dict() for r in history.get_run_history(agent_id, limit=limit)]


@router.get("/agents/{agent_id}/runs/stats")
async def run_stats(
    agent_id: str,
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    history: RunHistory = Depends(get_run_history),
):
    _require_agent(store, user_id, agent_id)
    return history.get_run_stats(agent_id).to_json_dict()


@router.get("/scheduler/status")
async def scheduler_status(scheduler: AgentScheduler = Depends(get_scheduler)):
    return scheduler.get_status().to_json_dict()


# ════════════════════════════════════════════════════════════
# TRIGGERS
# ════════════════════════════════════════════════════════════


@router.get("/triggers")
async def list_triggers(
    agent_id: str | None = Query(default=None, alias="agentId"),
    trigger_router: TriggerRouter = Depends(get_trigger_router),
):
    triggers = (
        trigger_router.get_triggers_for_agent(agent_id)
        if agent_id
        else trigger_router.list_triggers()
    )
    return [t.to_json_dict() for t in triggers]


@router.post("/triggers", status_code=201)
async def create_trigger(
    body: TriggerCreate,
    user_id: str = Depends(get_current_user),
    store: AgentStore = Depends(get_agent_store),
    trigger_router: TriggerRouter = Depends(get_trigger_router),
):
    """Register a manual, webhook or chain trigger for one of the user's agents."""
    _require_agent(store, user_id, body.agent_id)
    trigger = trigger_router.register(body.model_dump())
    return trigger.to_json_dict()


@router.delete("/triggers/{trigger_id}")
async def delete_trigger(
    trigger_id: str,
    trigger_router: TriggerRouter = Depends(get_trigger_router),
):
    if trigger_router.get_trigger(trigger_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown trigger: {trigger_id}")
    trigger_router.unregister(trigger_id)
    return {"success": True, "triggerId": trigger_id}


@router.post("/triggers/{trigger_id}/fire")
async def fire_trigger(
    trigger_id: str,
    payload: dict[str, Any] | None = Body(default=None),
    trigger_router: TriggerRouter = Depends(get_trigger_router),
):
    """Fire a trigger now; the body becomes the agent's trigger context."""
    result = await trigger_router.fire(trigger_id, payload)
    return {"triggerId": trigger_id, "result": _result_json(result)}


@router.post("/webhooks/{source}/{event}")
async def webhook(
    source: str,
    event: str,
    payload: Any = Body(default=None),
    trigger_router: TriggerRouter = Depends(get_trigger_router),
):
    """Fire every webhook trigger registered for ``source``/``event``."""
    results = await trigger_router.handle_webhook(source, event, payload)
    logger.info(f"Webhook {source}/{event}: {len(results)} trigger(s) fired")
    return {
        "source": source,
        "event": event,
        "matched": len(results),
        "results": [
            {**r, "result": _result_json(r["result"])} if "result" in r else r
            for r in results
        ],
    }
