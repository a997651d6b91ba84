"""cronbot CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from cronbot import __version__

app = typer.Typer(
    name="cronbot",
    help="cronbot - scheduled autonomous agent jobs",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"cronbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """cronbot - scheduled autonomous agent jobs."""


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


# ════════════════════════════════════════════════════════════
# serve — start API server (scheduler runs inside)
# ════════════════════════════════════════════════════════════


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port number"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host address"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
) -> None:
    """Start the API server and the agent scheduler (uvicorn)."""
    import uvicorn

    console.print(f"[green]Starting cronbot API on {host}:{port}[/green]")
    uvicorn.run("cronbot.api.app:app", host=host, port=port, reload=reload)


# ════════════════════════════════════════════════════════════
# status — config + storage info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration and storage status."""
    from cronbot.agent.permissions import ToolGroupRegistry
    from cronbot.core.config.loader import load_config
    from cronbot.store.agents import AgentStore
    from cronbot.store.runs import RunHistory

    config = load_config()
    store = AgentStore(config.agents_path, config.workspaces_path)
    history = RunHistory(config.runs_path)
    tool_groups = ToolGroupRegistry.from_yaml(config.tool_groups_path)
    storage = history.get_storage_stats()

    table = Table(title="cronbot status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Model", config.engine.model)
    table.add_row("Agents Dir", str(config.agents_path))
    table.add_row("Runs Dir", str(config.runs_path))
    table.add_row("Active Agents", str(len(store.get_all_active_agents())))
    table.add_row("Run Records", f"{storage['totalFiles']} ({storage['totalSizeMB']} MB)")
    table.add_row("Tool Groups", ", ".join(tool_groups.names()) or "-")
    table.add_row("Catch-up Policy", config.scheduler.catchup)

    console.print(table)


# ════════════════════════════════════════════════════════════
# agents — agent job inspection (sub-command group)
# ════════════════════════════════════════════════════════════

agents_app = typer.Typer(help="Inspect and run scheduled agents")
app.add_typer(agents_app, name="agents")


@agents_app.command("list")
def agents_list(
    user: str | None = typer.Option(None, "--user", "-u", help="User ID (default: owner)"),
    status_filter: str | None = typer.Option(None, "--status", "-s", help="active, paused or error"),
) -> None:
    """List a user's agents."""
    from cronbot.core.config.loader import load_config
    from cronbot.store.agents import AgentStore

    config = load_config()
    store = AgentStore(config.agents_path, config.workspaces_path)

    agents = store.list_agents(user or config.owner.username, status=status_filter)
    if not agents:
        console.print("[dim]No agents found.[/dim]")
        return

    table = Table(title="Scheduled Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Schedule", style="yellow")
    table.add_column("Status", style="green")
    table.add_column("Last Run", style="dim")
    table.add_column("Next Run", style="dim")
    table.add_column("Runs/Errors", style="blue")

    for agent in agents:
        table.add_row(
            agent.id,
            agent.name,
            f"{agent.schedule.cron} ({agent.schedule.timezone})",
            agent.status,
            _fmt_time(agent.last_run_at),
            _fmt_time(agent.next_run_at),
            f"{agent.run_count}/{agent.error_count}",
        )

    console.print(table)


@agents_app.command("runs")
def agents_runs(
    agent_id: str = typer.Argument(help="Agent ID"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs"),
) -> None:
    """Show an agent's recent runs."""
    from cronbot.core.config.loader import load_config
    from cronbot.store.runs import RunHistory

    config = load_config()
    history = RunHistory(config.runs_path)

    runs = history.get_run_history(agent_id, limit=limit)
    if not runs:
        console.print(f"[dim]No runs found for {agent_id}.[/dim]")
        return

    table = Table(title=f"Runs: {agent_id}")
    table.add_column("Started", style="dim")
    table.add_column("Status", style="green")
    table.add_column("Trigger", style="blue")
    table.add_column("Duration", style="yellow")
    table.add_column("Summary", style="white")

    for run in runs:
        if run.status == "error" and run.error:
            summary = f"[red]{run.error.message}[/red]"
        else:
            summary = run.outcome.summary if run.outcome else "-"
        duration = f"{run.duration_ms / 1000:.1f}s" if run.duration_ms is not None else "-"
        table.add_row(_fmt_time(run.started_at), run.status, run.trigger, duration, summary[:80])

    console.print(table)

    stats = history.get_run_stats(agent_id)
    console.print(
        f"[dim]{stats.total_runs} runs · {stats.success_count} ok · "
        f"{stats.error_count} failed · avg {stats.average_duration_ms / 1000:.1f}s[/dim]"
    )


@agents_app.command("run")
def agents_run(
    agent_id: str = typer.Argument(help="Agent ID"),
) -> None:
    """Run an agent once now, in the foreground."""
    from cronbot.core.config.loader import load_config
    from cronbot.core.errors import NotFoundError
    from cronbot.core.logging import setup_logging
    from cronbot.core.services import build_services

    config = load_config()
    setup_logging(config.log_level)
    services = build_services(config)

    try:
        result = asyncio.run(services.scheduler.trigger_agent(agent_id))
    except NotFoundError:
        console.print(f"[red]Agent not found:[/red] {agent_id}")
        raise typer.Exit(code=1)

    if result is None:
        console.print(f"[yellow]Agent did not run:[/yellow] {agent_id} (not active)")
        raise typer.Exit(code=1)

    if result.success:
        summary = result.run.outcome.summary if result.run and result.run.outcome else ""
        console.print(f"[green]Run succeeded[/green] ({result.attempts} attempt(s))")
        if summary:
            console.print(summary)
    else:
        console.print(f"[red]Run failed[/red] after {result.attempts} attempt(s): {result.error}")
        raise typer.Exit(code=1)


# ════════════════════════════════════════════════════════════
# cleanup — run history retention
# ════════════════════════════════════════════════════════════


@app.command()
def cleanup(
    days: int | None = typer.Option(None, "--days", "-d", help="Days of run history to keep"),
) -> None:
    """Delete run records older than the retention window."""
    from cronbot.core.config.loader import load_config
    from cronbot.store.runs import RunHistory

    config = load_config()
    history = RunHistory(config.runs_path)

    keep = days if days is not None else config.scheduler.run_retention_days
    deleted = history.cleanup(days_to_keep=keep)
    console.print(f"[green]Deleted {deleted} run record(s) older than {keep} days[/green]")
