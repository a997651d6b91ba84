"""AgentStore — CRUD for scheduled agent definitions.

Layout::

    {agents_dir}/{user_id}/{agent_id}.json     one file per job
    {workspaces_dir}/{agent_id}/               isolated job workspace

An in-memory ``agent_id -> user_id`` index lets stats/memory updates find a
job's owner without scanning every user directory.
"""

from __future__ import annotations

import re
import secrets
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_snake

from cronbot.core.cron.expr import parse_cron
from cronbot.core.errors import NotFoundError, ValidationError
from cronbot.store._files import read_json, write_json
from cronbot.store.models import (
    AGENT_STATUSES,
    AgentMemory,
    ScheduledAgent,
    utcnow,
)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_REQUIRED = ("name", "instructions", "schedule", "tool_groups")
_IMMUTABLE = frozenset({"id", "user_id"})


def _normalize(data: dict[str, Any] | BaseModel) -> dict[str, Any]:
    """Top-level keys to snake_case (``toolGroups`` -> ``tool_groups``)."""
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    return {to_snake(k): v for k, v in data.items()}


def _check_id(value: str, kind: str) -> str:
    if not isinstance(value, str) or not _SAFE_ID.match(value):
        raise ValidationError(f"Invalid {kind}: {value!r}")
    return value


class AgentStore:
    """File-backed store for ScheduledAgent definitions."""

    def __init__(self, agents_dir: str | Path, workspaces_dir: str | Path):
        self.agents_dir = Path(agents_dir)
        self.workspaces_dir = Path(workspaces_dir)
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        self.workspaces_dir.mkdir(parents=True, exist_ok=True)
        self._owners: dict[str, str] | None = None
        logger.info(f"AgentStore initialized: {self.agents_dir}")

    # ════════════════════════════════════════════════════════════
    # PATHS & VALIDATION
    # ════════════════════════════════════════════════════════════

    def _user_dir(self, user_id: str) -> Path:
        return self.agents_dir / user_id

    def _agent_path(self, user_id: str, agent_id: str) -> Path:
        return self._user_dir(user_id) / f"{agent_id}.json"

    def get_agent_workspace(self, agent_id: str) -> Path:
        return self.workspaces_dir / agent_id

    def ensure_agent_workspace(self, agent_id: str) -> Path:
        path = self.get_agent_workspace(agent_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    @staticmethod
    def generate_agent_id(name: str) -> str:
        """URL-safe slug of ``name`` plus an 8-hex random suffix."""
        slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "agent"
        return f"{slug}-{secrets.token_hex(4)}"

    @staticmethod
    def validate_agent(data: dict[str, Any]) -> None:
        """Check required fields, schedule and tool groups.

        Raises
        ------
        ValidationError
            Missing or malformed field.
        """
        missing = [f for f in _REQUIRED if data.get(f) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        schedule = data["schedule"]
        if isinstance(schedule, BaseModel):
            schedule = schedule.model_dump()
        if not isinstance(schedule, dict) or not schedule.get("cron"):
            raise ValidationError("Schedule must include cron expression")
        parse_cron(schedule["cron"], schedule.get("timezone") or "UTC")

        if not isinstance(data["tool_groups"], list):
            raise ValidationError("toolGroups must be an array")

        status = data.get("status")
        if status is not None and status not in AGENT_STATUSES:
            raise ValidationError(f"Invalid status: {status}")

    # ════════════════════════════════════════════════════════════
    # CRUD
    # ════════════════════════════════════════════════════════════

    def create_agent(self, user_id: str, data: dict[str, Any] | BaseModel) -> ScheduledAgent:
        """Validate and persist a new job, allocating its workspace."""
        _check_id(user_id, "user id")
        fields = _normalize(data)
        self.validate_agent(fields)

        agent_id = fields.get("id") or self.generate_agent_id(fields["name"])
        _check_id(agent_id, "agent id")
        if self._locate(agent_id) is not None:
            raise ValidationError(f"Agent id already exists: {agent_id}")

        schedule = fields["schedule"]
        if isinstance(schedule, BaseModel):
            schedule = schedule.model_dump()
        schedule = {**schedule, "timezone": schedule.get("timezone") or "UTC"}

        max_runs = fields.get("max_runs_per_hour")
        now = utcnow()
        try:
            agent = ScheduledAgent(
                id=agent_id,
                user_id=user_id,
                name=fields["name"],
                description=fields.get("description") or "",
                instructions=fields["instructions"],
                schedule=schedule,
                tool_groups=fields["tool_groups"],
                max_runs_per_hour=5 if max_runs is None else max_runs,
                max_tool_calls=fields.get("max_tool_calls"),
                permissions=fields.get("permissions") or {},
                status=fields.get("status") or "active",
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        agent.workspace_path = str(self.ensure_agent_workspace(agent_id))
        self._write(agent)
        self._index()[agent_id] = user_id
        logger.info(f"Agent created: {agent_id} (user={user_id}, cron={agent.schedule.cron})")
        return agent

    def get_agent(self, user_id: str, agent_id: str) -> ScheduledAgent | None:
        if not (_SAFE_ID.match(user_id) and _SAFE_ID.match(agent_id)):
            return None
        path = self._agent_path(user_id, agent_id)
        if not path.exists():
            return None
        return ScheduledAgent.model_validate(read_json(path))

    def list_agents(self, user_id: str, status: str | None = None) -> list[ScheduledAgent]:
        """List a user's agents, most recently updated first."""
        user_dir = self._user_dir(user_id)
        if not _SAFE_ID.match(user_id) or not user_dir.is_dir():
            return []

        agents = [
            ScheduledAgent.model_validate(read_json(p))
            for p in user_dir.glob("*.json")
        ]
        if status:
            agents = [a for a in agents if a.status == status]
        agents.sort(key=lambda a: a.updated_at, reverse=True)
        return agents

    def update_agent(
        self, user_id: str, agent_id: str, updates: dict[str, Any] | BaseModel
    ) -> ScheduledAgent:
        """Shallow-merge ``updates`` into the stored agent.

        ``id`` and ``user_id`` are never changed. Schedule or tool group
        changes are re-validated.
        """
        agent = self.get_agent(user_id, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")

        patch = {k: v for k, v in _normalize(updates).items() if k not in _IMMUTABLE}
        merged = {**agent.model_dump(), **patch, "updated_at": utcnow()}

        if "schedule" in patch or "tool_groups" in patch:
            self.validate_agent(merged)

        try:
            updated = ScheduledAgent.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        self._write(updated)
        return updated

    def delete_agent(self, user_id: str, agent_id: str) -> bool:
        """Delete an agent and its workspace. Returns False if not found."""
        if not (_SAFE_ID.match(user_id) and _SAFE_ID.match(agent_id)):
            return False
        path = self._agent_path(user_id, agent_id)
        if not path.exists():
            return False
        path.unlink()
        self.delete_agent_workspace(agent_id)
        self._index().pop(agent_id, None)
        logger.info(f"Agent deleted: {agent_id}")
        return True

    def toggle_status(self, user_id: str, agent_id: str, status: str) -> ScheduledAgent:
        if status not in AGENT_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        return self.update_agent(user_id, agent_id, {"status": status})

    # ════════════════════════════════════════════════════════════
    # CROSS-USER ACCESS
    # ════════════════════════════════════════════════════════════

    def get_all_active_agents(self) -> list[ScheduledAgent]:
        """All ``status=active`` agents across every user (startup scan)."""
        agents: list[ScheduledAgent] = []
        for user_dir in sorted(self.agents_dir.iterdir()):
            if user_dir.is_dir():
                agents.extend(self.list_agents(user_dir.name, status="active"))
        return agents

    def get_agent_by_id(self, agent_id: str) -> ScheduledAgent | None:
        user_id = self._locate(agent_id)
        if user_id is None:
            return None
        return self.get_agent(user_id, agent_id)

    def update_stats(self, agent_id: str, stats: dict[str, Any]) -> ScheduledAgent:
        """Update run statistics / scheduling fields of an agent (any user)."""
        user_id = self._locate(agent_id)
        if user_id is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return self.update_agent(user_id, agent_id, stats)

    def update_memory(self, agent_id: str, memory_update: dict[str, Any]) -> ScheduledAgent:
        """Merge a memory update, stamp ``last_updated`` and enforce list bounds."""
        agent = self.get_agent_by_id(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")

        merged = {
            **agent.memory.model_dump(),
            **_normalize(memory_update),
            "last_updated": utcnow(),
        }
        memory = AgentMemory.model_validate(merged).bounded()
        return self.update_stats(agent_id, {"memory": memory})

    def _index(self) -> dict[str, str]:
        if self._owners is None:
            self._owners = {}
            for user_dir in self.agents_dir.iterdir():
                if not user_dir.is_dir():
                    continue
                for p in user_dir.glob("*.json"):
                    self._owners[p.stem] = user_dir.name
        return self._owners

    def _locate(self, agent_id: str) -> str | None:
        """Owner of ``agent_id``; rebuilds the index once on a miss."""
        user_id = self._index().get(agent_id)
        if user_id and self._agent_path(user_id, agent_id).exists():
            return user_id
        self._owners = None
        return self._index().get(agent_id)

    # ════════════════════════════════════════════════════════════
    # WORKSPACE
    # ════════════════════════════════════════════════════════════

    def get_workspace_files(self, agent_id: str) -> list[dict[str, Any]]:
        """Files in the agent workspace, most recently modified first."""
        workspace = self.get_agent_workspace(agent_id)
        if not workspace.is_dir():
            return []

        files = []
        for p in workspace.iterdir():
            if not p.is_file():
                continue
            stat = p.stat()
            files.append({
                "name": p.name,
                "path": str(p),
                "size": stat.st_size,
                "modifiedAt": datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
            })
        files.sort(key=lambda f: f["modifiedAt"], reverse=True)
        return files

    def delete_agent_workspace(self, agent_id: str) -> None:
        workspace = self.get_agent_workspace(agent_id)
        if workspace.exists():
            shutil.rmtree(workspace)

    def _write(self, agent: ScheduledAgent) -> None:
        write_json(self._agent_path(agent.user_id, agent.id), agent.to_json_dict())
