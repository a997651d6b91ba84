"""Tool groups and pre-authorization — load tool_groups.yaml, flatten tool names.

tool_groups.yaml::

    tool_groups:
      slack:
        transport: {command: npx, args: ["-y", "slack-mcp"]}
        tools: [mcp__slack__post_message, mcp__slack__list_channels]
      github:
        transport: {url: "https://example.com/github/mcp"}
        tools: [mcp__github__create_issue]

Everything except ``tools`` is opaque transport configuration handed to the
engine as-is.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from cronbot.store.models import ScheduledAgent

# Built-in file/web tools approved for every pre-authorized batch run
BUILTIN_TOOLS: tuple[str, ...] = (
    "bash", "read", "write", "edit", "glob", "grep",
    "Bash", "Read", "Write", "Edit", "Glob", "Grep",
    "WebSearch", "WebFetch", "Task",
    "NotebookEdit", "NotebookRead",
)


class ToolGroupRegistry:
    """Named tool groups available to scheduled agents."""

    def __init__(self, groups: dict[str, dict[str, Any]] | None = None):
        self._groups: dict[str, dict[str, Any]] = dict(groups or {})

    @classmethod
    def from_yaml(cls, path: str | Path) -> ToolGroupRegistry:
        """Load tool groups from YAML. Missing file → empty registry."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"tool_groups.yaml not found at {path}, agents run with no tool groups")
            return cls()

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        groups = data.get("tool_groups") or {}
        logger.info(f"Loaded tool groups: {list(groups.keys())}")
        return cls(groups)

    def names(self) -> list[str]:
        return list(self._groups)

    def resolve(self, names: list[str] | None) -> dict[str, dict[str, Any]]:
        """Subset of group configs named in ``names``; unknown names are skipped."""
        if not names:
            return {}

        resolved: dict[str, dict[str, Any]] = {}
        for name in names:
            if name in self._groups:
                resolved[name] = self._groups[name]
            else:
                logger.warning(
                    f"Tool group '{name}' not found. Available: {', '.join(self._groups) or 'none'}"
                )
        return resolved

    def get_tools(self, names: list[str] | None) -> list[str]:
        """Flattened, de-duplicated tool names of the named groups."""
        tools: list[str] = []
        for group in self.resolve(names).values():
            for tool in group.get("tools", []):
                if tool not in tools:
                    tools.append(tool)
        return tools


def get_pre_authorized_tools(agent: ScheduledAgent) -> list[str]:
    """Tools the engine may call without an interactive prompt.

    Empty when the agent is not pre-authorized.
    """
    if not agent.permissions.pre_authorized:
        return []

    approved: list[str] = []
    for tool in [*agent.permissions.tools, *BUILTIN_TOOLS]:
        if tool not in approved:
            approved.append(tool)
    return approved
