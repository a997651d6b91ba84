"""Tests for cronbot.api — agents, runs, scheduler status, triggers, webhooks."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from cronbot.agent.executor import AgentExecutor
from cronbot.api.app import create_app
from cronbot.core.config.schema import Config
from cronbot.core.cron.scheduler import AgentScheduler
from cronbot.core.triggers.router import TriggerRouter


@pytest.fixture
def app(tmp_path, agent_store, run_history, tool_groups, make_engine):
    """Test app with tmp storage and a scripted engine (lifespan not run)."""
    config = Config(owner={"username": "u1"}, storage={"root": str(tmp_path)})
    application = create_app()

    executor = AgentExecutor(agent_store, run_history, make_engine(), tool_groups)
    scheduler = AgentScheduler(agent_store, executor, config=config.scheduler)
    trigger_router = TriggerRouter(runner=scheduler)
    scheduler.trigger_router = trigger_router

    application.state.config = config
    application.state.agent_store = agent_store
    application.state.run_history = run_history
    application.state.tool_groups = tool_groups
    application.state.scheduler = scheduler
    application.state.trigger_router = trigger_router
    application.state.background_tasks = set()
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


@pytest.fixture
async def created(client, agent_data):
    resp = await client.post("/agents", json=agent_data)
    assert resp.status_code == 201
    return resp.json()


# --- Health ---


async def test_health(client, created):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["scheduledJobs"] == 1


# --- Agents ---


async def test_create_agent(created, app):
    assert created["userId"] == "u1"
    assert created["status"] == "active"
    assert created["nextRunAt"] is not None
    assert created["workspacePath"]
    assert created["permissions"] == {
        "preAuthorized": True,
        "tools": ["mcp__slack__post_message", "mcp__slack__list_channels"],
    }
    assert app.state.scheduler.is_scheduled(created["id"])


async def test_create_keeps_explicit_tools(client, agent_data):
    agent_data["permissions"] = {"tools": ["mcp__slack__post_message"]}
    resp = await client.post("/agents", json=agent_data)
    assert resp.json()["permissions"]["tools"] == ["mcp__slack__post_message"]


async def test_create_invalid_cron(client, agent_data):
    agent_data["schedule"] = {"cron": "every day at nine"}
    resp = await client.post("/agents", json=agent_data)
    assert resp.status_code == 422
    assert "Invalid cron expression" in resp.json()["detail"]


async def test_create_missing_fields(client):
    resp = await client.post("/agents", json={"name": "No instructions"})
    assert resp.status_code == 422


async def test_list_and_get(client, created):
    resp = await client.get("/agents")
    assert [a["id"] for a in resp.json()] == [created["id"]]

    resp = await client.get(f"/agents/{created['id']}")
    data = resp.json()
    assert data["name"] == "Daily Digest"
    assert data["isScheduled"] is True
    assert data["isRunning"] is False
    assert data["workspaceFiles"] == []


async def test_list_by_status(client, created):
    resp = await client.get("/agents", params={"status": "paused"})
    assert resp.json() == []


async def test_get_unknown(client):
    resp = await client.get("/agents/ghost-00000000")
    assert resp.status_code == 404


async def test_user_isolation(client, created):
    resp = await client.get(f"/agents/{created['id']}", headers={"X-User-Id": "u2"})
    assert resp.status_code == 404
    resp = await client.get("/agents", headers={"X-User-Id": "u2"})
    assert resp.json() == []


async def test_update_schedule(client, created, app):
    resp = await client.patch(
        f"/agents/{created['id']}",
        json={"schedule": {"cron": "30 7 * * *", "timezone": "Europe/Istanbul"}},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["schedule"]["cron"] == "30 7 * * *"
    assert data["nextRunAt"] != created["nextRunAt"]
    assert app.state.scheduler.is_scheduled(created["id"])


async def test_update_invalid_cron(client, created):
    resp = await client.patch(f"/agents/{created['id']}", json={"schedule": {"cron": "* *"}})
    assert resp.status_code == 422


async def test_update_never_changes_owner(client, created):
    resp = await client.patch(f"/agents/{created['id']}", json={"name": "Renamed", "userId": "u9"})
    assert resp.json()["name"] == "Renamed"
    assert resp.json()["userId"] == "u1"


async def test_update_tool_groups_refreshes_tools(client, created):
    resp = await client.patch(f"/agents/{created['id']}", json={"toolGroups": ["slack", "github"]})
    assert resp.status_code == 200
    assert resp.json()["toolGroups"] == ["slack", "github"]
    assert resp.json()["permissions"] == {
        "preAuthorized": True,
        "tools": [
            "mcp__slack__post_message",
            "mcp__slack__list_channels",
            "mcp__github__create_issue",
        ],
    }

    resp = await client.get(f"/agents/{created['id']}")
    assert "mcp__github__create_issue" in resp.json()["permissions"]["tools"]


async def test_update_tool_groups_keeps_explicit_permissions(client, created):
    resp = await client.patch(
        f"/agents/{created['id']}",
        json={
            "toolGroups": ["slack", "github"],
            "permissions": {"tools": ["mcp__github__create_issue"]},
        },
    )
    assert resp.json()["permissions"]["tools"] == ["mcp__github__create_issue"]


async def test_pause_and_resume(client, created, app):
    resp = await client.post(f"/agents/{created['id']}/status", json={"status": "paused"})
    assert resp.json()["status"] == "paused"
    assert not app.state.scheduler.is_scheduled(created["id"])

    await client.post(f"/agents/{created['id']}/status", json={"status": "active"})
    assert app.state.scheduler.is_scheduled(created["id"])


async def test_invalid_status(client, created):
    resp = await client.post(f"/agents/{created['id']}/status", json={"status": "sleeping"})
    assert resp.status_code == 422


async def test_delete_agent(client, created, app):
    agent_id = created["id"]
    await client.post(f"/agents/{agent_id}/run", params={"wait": True})
    await client.post(
        "/triggers", json={"id": "t1", "type": "manual", "agentId": agent_id}
    )

    resp = await client.delete(f"/agents/{agent_id}")
    assert resp.json() == {"success": True, "agentId": agent_id, "deletedRuns": 1}
    assert not app.state.scheduler.is_scheduled(agent_id)
    assert app.state.trigger_router.list_triggers() == []
    assert (await client.get(f"/agents/{agent_id}")).status_code == 404


# --- Runs ---


async def test_run_and_wait(client, created):
    resp = await client.post(f"/agents/{created['id']}/run", params={"wait": True})
    assert resp.status_code == 202
    data = resp.json()
    assert data["success"] is True
    assert data["attempts"] == 1
    assert data["run"]["trigger"] == "manual"
    assert data["run"]["status"] == "success"


async def test_run_in_background(client, created, app):
    resp = await client.post(f"/agents/{created['id']}/run")
    assert resp.status_code == 202
    assert resp.json()["message"] == "Agent execution started in background"

    await asyncio.gather(*app.state.background_tasks)
    runs = (await client.get(f"/agents/{created['id']}/runs")).json()
    assert len(runs) == 1


async def test_runs_and_stats(client, created):
    for _ in range(2):
        await client.post(f"/agents/{created['id']}/run", params={"wait": True})

    runs = (await client.get(f"/agents/{created['id']}/runs", params={"limit": 1})).json()
    assert len(runs) == 1

    stats = (await client.get(f"/agents/{created['id']}/runs/stats")).json()
    assert stats["totalRuns"] == 2
    assert stats["successCount"] == 2
    assert stats["lastRun"]["status"] == "success"


async def test_scheduler_status(client, created):
    resp = await client.get("/scheduler/status")
    data = resp.json()
    assert data["totalJobs"] == 1
    assert data["runningJobs"] == 0
    assert data["jobs"][0]["agentId"] == created["id"]


# --- Triggers / webhooks ---


async def test_trigger_crud(client, created):
    body = {
        "id": "gh-push",
        "type": "webhook",
        "agentId": created["id"],
        "config": {"source": "github", "event": "push"},
    }
    resp = await client.post("/triggers", json=body)
    assert resp.status_code == 201
    assert resp.json()["agentId"] == created["id"]

    listed = (await client.get("/triggers", params={"agentId": created["id"]})).json()
    assert [t["id"] for t in listed] == ["gh-push"]

    assert (await client.delete("/triggers/gh-push")).status_code == 200
    assert (await client.delete("/triggers/gh-push")).status_code == 404


async def test_trigger_for_unknown_agent(client):
    resp = await client.post(
        "/triggers", json={"id": "t1", "type": "manual", "agentId": "ghost-00000000"}
    )
    assert resp.status_code == 404


async def test_invalid_trigger(client, created):
    resp = await client.post(
        "/triggers", json={"id": "t1", "type": "chain", "agentId": created["id"]}
    )
    assert resp.status_code == 422


async def test_fire_trigger(client, created, run_history):
    await client.post("/triggers", json={"id": "t1", "type": "manual", "agentId": created["id"]})

    resp = await client.post("/triggers/t1/fire", json={"reason": "release"})
    assert resp.status_code == 200
    assert resp.json()["result"]["success"] is True
    assert run_history.get_latest_run(created["id"]).trigger == "manual"


async def test_fire_unknown_trigger(client):
    resp = await client.post("/triggers/ghost/fire")
    assert resp.status_code == 404


async def test_webhook(client, created, run_history):
    await client.post(
        "/triggers",
        json={
            "id": "gh-push",
            "type": "webhook",
            "agentId": created["id"],
            "config": {"source": "github", "event": "push"},
        },
    )

    resp = await client.post("/webhooks/github/push", json={"ref": "refs/heads/main"})
    data = resp.json()
    assert data["matched"] == 1
    assert data["results"][0]["triggerId"] == "gh-push"
    assert data["results"][0]["result"]["success"] is True
    assert run_history.get_latest_run(created["id"]).trigger == "webhook"

    resp = await client.post("/webhooks/github/issues", json={})
    assert resp.json()["matched"] == 0
