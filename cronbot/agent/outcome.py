"""Turn an engine event stream into run actions, created files and an outcome."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any

from loguru import logger

from cronbot.agent.engine import ToolResult, ToolUse
from cronbot.store.models import (
    ExternalAction,
    RunAction,
    RunOutcome,
    utcnow,
)

_WRITE_TOOLS = frozenset({"write", "edit", "Write", "Edit"})
_SHELL_TOOLS = frozenset({"bash", "Bash"})
_REDIRECT = re.compile(r""">\s*["']?([^"'\s>]+)""")


class ActionRecorder:
    """Pairs tool_use / tool_result events by call id.

    A tool_use opens a pending call; the matching tool_result closes it into a
    :class:`RunAction`. Results with an unknown call id are dropped.
    """

    def __init__(self) -> None:
        self.actions: list[RunAction] = []
        self.tool_calls = 0
        self._pending: dict[str, tuple[ToolUse, Any, float]] = {}

    def on_tool_use(self, event: ToolUse) -> None:
        self.tool_calls += 1
        self._pending[event.call_id] = (event, utcnow(), time.monotonic())

    def on_tool_result(self, event: ToolResult) -> None:
        opened = self._pending.pop(event.call_id, None)
        if opened is None:
            logger.debug(f"tool_result for unknown call id {event.call_id}, ignored")
            return
        use, timestamp, started = opened
        self.actions.append(
            RunAction(
                tool=use.tool,
                input=use.input,
                result=event.result,
                is_error=event.is_error,
                timestamp=timestamp,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )

    @property
    def last_tool(self) -> str | None:
        """Most recent tool in flight, else the last completed one."""
        if self._pending:
            return next(reversed(self._pending.values()))[0].tool
        if self.actions:
            return self.actions[-1].tool
        return None


def extract_files_created(actions: list[RunAction], workspace: str | None) -> list[str]:
    """Files written by write/edit tools or shell redirects into the workspace."""
    files: list[str] = []
    for action in actions:
        if action.tool in _WRITE_TOOLS:
            path = action.input.get("file_path") or action.input.get("path")
            if path and path not in files:
                files.append(path)
        elif action.tool in _SHELL_TOOLS:
            command = action.input.get("command") or ""
            match = _REDIRECT.search(command)
            if match and workspace and match.group(1).startswith(workspace):
                if match.group(1) not in files:
                    files.append(match.group(1))
    return files


# ════════════════════════════════════════════════════════════
# OUTCOME CLASSIFICATION
# ════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class _SideEffect:
    """A recognized external side effect: tool name contains both keywords."""

    system: str
    verb: str
    label: str
    url_keys: tuple[str, ...]
    target_key: str | None = None


_SIDE_EFFECTS: tuple[_SideEffect, ...] = (
    _SideEffect("linkedin", "post", "Created post", ("postUrl", "url")),
    _SideEffect("slack", "post", "Posted to {target}", ("permalink", "url"), "channel"),
    _SideEffect("github", "create", "Created {target}", ("html_url", "url"), "type"),
    _SideEffect("gmail", "send", "Sent email", ()),
    _SideEffect("notion", "create", "Created page", ("url",)),
)

_DEFAULT_TARGETS = {"channel": "channel", "type": "item"}


def _external_action(effect: _SideEffect, action: RunAction) -> ExternalAction:
    label = effect.label
    if effect.target_key:
        target = action.input.get(effect.target_key) or _DEFAULT_TARGETS[effect.target_key]
        label = label.format(target=target)

    url = None
    if isinstance(action.result, dict):
        url = next((action.result[k] for k in effect.url_keys if action.result.get(k)), None)
    return ExternalAction(system=effect.system, action=label, url=url)


def parse_outcome(
    actions: list[RunAction], text: str, error: BaseException | None = None
) -> RunOutcome:
    """Classify a run: external side effects → ``action``, else ``response``."""
    if error is not None:
        return RunOutcome(type="error", summary=str(error) or type(error).__name__)

    external: list[ExternalAction] = []
    for action in actions:
        if action.is_error or action.result is None:
            continue
        tool = action.tool.lower()
        for effect in _SIDE_EFFECTS:
            if effect.system in tool and effect.verb in tool:
                external.append(_external_action(effect, action))

    details = text or None
    if external:
        return RunOutcome(
            type="action",
            summary=", ".join(e.action for e in external),
            details=details,
            external_actions=external,
        )
    return RunOutcome(type="response", summary=text or "Completed", details=details)
