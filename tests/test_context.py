"""Tests for cronbot.agent.context — effective instructions and rolling memory."""

from datetime import datetime, timezone

from cronbot.agent.context import build_instructions, fold_memory, summarize_run
from cronbot.store.models import (
    AgentMemory,
    ExternalAction,
    RunOutcome,
    RunRecord,
)


def _run(summary="Posted weekly update", files=None, external=None):
    return RunRecord(
        agent_id="job-1",
        started_at=datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc),
        status="success",
        files_created=files or [],
        outcome=RunOutcome(type="response", summary=summary, external_actions=external or []),
    )


# ── build_instructions ─────────────────────────────────────


def test_instructions_without_memory(agent):
    text = build_instructions(agent)
    assert text.startswith("Summarize today's top stories.")
    assert "Context from Previous Runs" not in text
    assert text.endswith(f"**Workspace:** Save any files to: {agent.workspace_path}")


def test_instructions_with_memory(agent):
    agent.memory = AgentMemory(
        summary="Oct 14: Covered AI chips\nOct 15: Covered EV batteries",
        recent_topics=["slack: Posted to #news"],
        recent_files=[f"/ws/f{i}.md" for i in range(8)],
    )
    text = build_instructions(agent)

    assert text.startswith("## Context from Previous Runs")
    assert "Oct 15: Covered EV batteries" in text
    assert "Recent topics covered: slack: Posted to #news" in text
    assert "Recent files created: /ws/f3.md, /ws/f4.md, /ws/f5.md, /ws/f6.md, /ws/f7.md" in text
    assert "/ws/f2.md" not in text
    assert "**Important:**" in text
    assert text.index("## Your Task") < text.index("Summarize today's top stories.")


def test_instructions_with_trigger_context(agent):
    text = build_instructions(agent, 'Trigger event data:\n{"source": "github"}')
    assert "## Trigger Event" in text
    assert text.index("## Trigger Event") < text.index("**Workspace:**")


# ── summarize_run / fold_memory ────────────────────────────


def test_summarize_run():
    assert summarize_run(_run()) == "Oct 16: Posted weekly update"


def test_summarize_run_with_files_and_long_summary():
    line = summarize_run(_run(summary="x" * 300 + "\nsecond line", files=["/ws/job/report.md"]))
    assert line.startswith("Oct 16: " + "x" * 200 + "...")
    assert line.endswith("(created: report.md)")
    assert "second line" not in line


def test_fold_memory_appends(agent):
    agent.memory = AgentMemory(summary="Oct 15: earlier", recent_files=["/ws/old.md"])
    patch = fold_memory(
        agent,
        _run(files=["/ws/new.md"], external=[ExternalAction(system="slack", action="Posted to #news")]),
    )

    assert patch["summary"] == "Oct 15: earlier\nOct 16: Posted weekly update (created: new.md)"
    assert patch["recent_files"] == ["/ws/old.md", "/ws/new.md"]
    assert patch["recent_topics"] == ["slack: Posted to #news"]


def test_fold_memory_keeps_last_five_lines(agent):
    agent.memory = AgentMemory(summary="\n".join(f"Oct {d}: day {d}" for d in range(1, 6)))
    patch = fold_memory(agent, _run())

    lines = patch["summary"].splitlines()
    assert len(lines) == 5
    assert lines[0] == "Oct 2: day 2"
    assert lines[-1] == "Oct 16: Posted weekly update"
