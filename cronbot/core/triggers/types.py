"""Trigger definitions."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field

from cronbot.store.models import CamelModel

TriggerType = Literal["manual", "webhook", "chain"]
TRIGGER_TYPES: tuple[str, ...] = ("manual", "webhook", "chain")


class Trigger(CamelModel):
    """A non-cron cause for running an agent.

    ``config`` by type:
      - webhook: ``{"source": "github", "event": "pull_request.opened"}``
      - chain: ``{"sourceAgentId": "<agent id>"}``
      - manual: unused
    """

    id: str
    type: TriggerType
    agent_id: str
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def source_agent_id(self) -> str | None:
        return self.config.get("sourceAgentId") or self.config.get("source_agent_id")

    def matches_webhook(self, source: str, event: str) -> bool:
        return (
            self.type == "webhook"
            and self.config.get("source") == source
            and self.config.get("event") == event
        )
