"""Tests for cronbot.cli."""

from unittest.mock import patch

import pytest
from rich.console import Console
from typer.testing import CliRunner

from cronbot.cli import commands
from cronbot.cli.commands import app
from cronbot.core.config.schema import Config
from cronbot.core.services import build_services
from cronbot.store.agents import AgentStore
from cronbot.store.models import RunRecord
from cronbot.store.runs import RunHistory

runner = CliRunner()

_PATCH_CONFIG = "cronbot.core.config.loader.load_config"
_PATCH_SERVICES = "cronbot.core.services.build_services"
_PATCH_LOGGING = "cronbot.core.logging.setup_logging"


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # Keep rich tables from wrapping cell text
    monkeypatch.setattr(commands, "console", Console(width=200))


@pytest.fixture
def config(tmp_path):
    return Config(owner={"username": "u1"}, storage={"root": str(tmp_path)})


@pytest.fixture
def stored_agent(config, agent_data):
    store = AgentStore(config.agents_path, config.workspaces_path)
    return store.create_agent("u1", agent_data)


def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("serve", "status", "agents", "cleanup"):
        assert name in result.output


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "cronbot v" in result.output


def test_status_output(config):
    with patch(_PATCH_CONFIG, return_value=config):
        result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "claude-sonnet" in result.output
    assert "Active Agents" in result.output
    assert "skip_frequent" in result.output


def test_agents_list_empty(config):
    with patch(_PATCH_CONFIG, return_value=config):
        result = runner.invoke(app, ["agents", "list"])

    assert result.exit_code == 0
    assert "No agents found." in result.output


def test_agents_list(config, stored_agent):
    with patch(_PATCH_CONFIG, return_value=config):
        result = runner.invoke(app, ["agents", "list", "--user", "u1"])

    assert result.exit_code == 0
    assert stored_agent.id in result.output
    assert "Daily Digest" in result.output
    assert "0 9 * * *" in result.output


def test_agents_runs_empty(config, stored_agent):
    with patch(_PATCH_CONFIG, return_value=config):
        result = runner.invoke(app, ["agents", "runs", stored_agent.id])

    assert result.exit_code == 0
    assert f"No runs found for {stored_agent.id}." in result.output


def test_agents_runs(config, stored_agent):
    history = RunHistory(config.runs_path)
    history.save_run(
        RunRecord(agent_id=stored_agent.id, status="success", duration_ms=1500,
                  outcome={"type": "response", "summary": "Posted digest"})
    )

    with patch(_PATCH_CONFIG, return_value=config):
        result = runner.invoke(app, ["agents", "runs", stored_agent.id, "-n", "5"])

    assert result.exit_code == 0
    assert "Posted digest" in result.output
    assert "1 runs" in result.output


def test_agents_run(config, stored_agent, make_engine):
    with (
        patch(_PATCH_CONFIG, return_value=config),
        patch(_PATCH_LOGGING),
        patch(_PATCH_SERVICES, side_effect=lambda cfg: build_services(cfg, engine=make_engine())),
    ):
        result = runner.invoke(app, ["agents", "run", stored_agent.id])

    assert result.exit_code == 0
    assert "Run succeeded" in result.output
    assert "Done" in result.output
    assert len(RunHistory(config.runs_path).get_run_history(stored_agent.id)) == 1


def test_agents_run_failure(config, stored_agent, make_engine):
    with (
        patch(_PATCH_CONFIG, return_value=config),
        patch(_PATCH_LOGGING),
        patch(
            _PATCH_SERVICES,
            side_effect=lambda cfg: build_services(cfg, engine=make_engine(configured=False)),
        ),
    ):
        result = runner.invoke(app, ["agents", "run", stored_agent.id])

    assert result.exit_code == 1
    assert "Run failed" in result.output


def test_agents_run_unknown(config, make_engine):
    with (
        patch(_PATCH_CONFIG, return_value=config),
        patch(_PATCH_LOGGING),
        patch(_PATCH_SERVICES, side_effect=lambda cfg: build_services(cfg, engine=make_engine())),
    ):
        result = runner.invoke(app, ["agents", "run", "ghost-00000000"])

    assert result.exit_code == 1
    assert "Agent not found" in result.output


def test_cleanup(config, stored_agent):
    with patch(_PATCH_CONFIG, return_value=config):
        result = runner.invoke(app, ["cleanup", "--days", "7"])

    assert result.exit_code == 0
    assert "Deleted 0 run record(s) older than 7 days" in result.output
