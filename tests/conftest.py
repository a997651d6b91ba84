"""Shared fixtures: file stores under tmp_path and a scripted engine."""

from __future__ import annotations

import asyncio

import pytest

from cronbot.agent.engine import Result, Text
from cronbot.agent.executor import AgentExecutor
from cronbot.agent.permissions import ToolGroupRegistry
from cronbot.core.errors import ConfigurationError, EngineError
from cronbot.store.agents import AgentStore
from cronbot.store.runs import RunHistory


class FakeEngine:
    """Engine stand-in that replays a fixed event script.

    ``fail_times`` makes the first N runs raise a transient EngineError;
    ``delay`` keeps a run in flight before the script starts.
    """

    def __init__(self, script=None, *, configured=True, fail_times=0, delay=0.0):
        self.script = script if script is not None else [Text(content="Done"), Result()]
        self.configured = configured
        self.fail_times = fail_times
        self.delay = delay
        self.requests = []
        self.aborted = False

    def check_configured(self):
        if not self.configured:
            raise ConfigurationError("No API key configured")

    async def run(self, request, abort):
        self.requests.append(request)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise EngineError("temporary network failure")
        if self.delay:
            await asyncio.sleep(self.delay)
        for event in self.script:
            if abort.is_set():
                self.aborted = True
                return
            yield event


AGENT_DATA = {
    "name": "Daily Digest",
    "description": "Morning news digest",
    "instructions": "Summarize today's top stories.",
    "schedule": {"cron": "0 9 * * *", "timezone": "UTC"},
    "toolGroups": ["slack"],
}

TOOL_GROUPS = {
    "slack": {
        "transport": {"command": "npx", "args": ["-y", "slack-mcp"]},
        "tools": ["mcp__slack__post_message", "mcp__slack__list_channels"],
    },
    "github": {
        "transport": {"url": "https://example.com/github/mcp"},
        "tools": ["mcp__github__create_issue"],
    },
}


@pytest.fixture
def agent_store(tmp_path):
    return AgentStore(tmp_path / "agents", tmp_path / "workspaces")


@pytest.fixture
def run_history(tmp_path):
    return RunHistory(tmp_path / "runs")


@pytest.fixture
def tool_groups():
    return ToolGroupRegistry(TOOL_GROUPS)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def executor(agent_store, run_history, engine, tool_groups):
    return AgentExecutor(agent_store, run_history, engine, tool_groups)


@pytest.fixture
def agent(agent_store):
    return agent_store.create_agent("u1", dict(AGENT_DATA))


@pytest.fixture
def agent_data():
    return {**AGENT_DATA, "schedule": dict(AGENT_DATA["schedule"])}


@pytest.fixture
def make_engine():
    """Factory for scripted engines: ``make_engine([events], fail_times=2)``."""
    return FakeEngine


@pytest.fixture
def make_executor(agent_store, run_history, tool_groups):
    def _make(engine=None, **kwargs):
        return AgentExecutor(agent_store, run_history, engine or FakeEngine(), tool_groups, **kwargs)

    return _make
