"""Memory context — effective instructions in, rolling memory out."""

from __future__ import annotations

from pathlib import PurePath
from typing import Any

from cronbot.store.models import (
    MAX_SUMMARY_LINES,
    RunRecord,
    ScheduledAgent,
)

_SUMMARY_LINE_CHARS = 200

_MEMORY_TEMPLATE = """## Context from Previous Runs

{summary}
{extras}
**Important:** Use this context to avoid repeating recent content and to build upon previous work.

---

## Your Task

"""


def build_instructions(agent: ScheduledAgent, context: str | None = None) -> str:
    """Build the instructions sent to the engine.

    Layers:
      1. Memory block (previous run summaries, recent topics, recent files)
      2. The agent's own instructions
      3. Trigger context (webhook payload, chain source result), if any
      4. Workspace directive
    """
    parts: list[str] = []

    memory = agent.memory
    if memory.summary:
        extras = ""
        if memory.recent_topics:
            extras += f"\nRecent topics covered: {', '.join(memory.recent_topics)}\n"
        if memory.recent_files:
            extras += f"\nRecent files created: {', '.join(memory.recent_files[-5:])}\n"
        parts.append(_MEMORY_TEMPLATE.format(summary=memory.summary, extras=extras))

    parts.append(agent.instructions)

    if context:
        parts.append(f"\n\n## Trigger Event\n\n{context.strip()}")

    if agent.workspace_path:
        parts.append(f"\n\n**Workspace:** Save any files to: {agent.workspace_path}")

    return "".join(parts)


def summarize_run(run: RunRecord) -> str:
    """One memory line for a run: ``Oct 16: <summary> (created: a.md, b.csv)``."""
    started = run.started_at
    summary = (run.outcome.summary if run.outcome else "") or "Completed"
    first_line = next((line.strip() for line in summary.splitlines() if line.strip()), "Completed")
    if len(first_line) > _SUMMARY_LINE_CHARS:
        first_line = first_line[:_SUMMARY_LINE_CHARS].rstrip() + "..."

    line = f"{started:%b} {started.day}: {first_line}"
    if run.files_created:
        names = ", ".join(PurePath(f).name for f in run.files_created)
        line += f" (created: {names})"
    return line


def fold_memory(agent: ScheduledAgent, run: RunRecord) -> dict[str, Any]:
    """Memory patch after a successful run (bounds are enforced by the store)."""
    lines = [line for line in agent.memory.summary.splitlines() if line.strip()]
    lines.append(summarize_run(run))

    topics = list(agent.memory.recent_topics)
    if run.outcome:
        for ext in run.outcome.external_actions:
            topic = f"{ext.system}: {ext.action}"
            if topic not in topics:
                topics.append(topic)

    return {
        "summary": "\n".join(lines[-MAX_SUMMARY_LINES:]),
        "recent_topics": topics,
        "recent_files": [*agent.memory.recent_files, *run.files_created],
    }
