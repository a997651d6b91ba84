"""TriggerRouter — route manual, webhook and chain events to agent runs.

Cron is handled by :class:`~cronbot.core.cron.scheduler.AgentScheduler`; the
router covers every other cause. Runs go through a *runner* (anything with
``async execute_agent(agent_id, trigger=..., context=...)``). In production the
runner is the scheduler itself, so single-flight and rate limits apply to
every trigger type alike.

Events (``router.on(name, callback)``)::

    trigger:registered    Trigger
    trigger:unregistered  trigger id
    trigger:firing        {"triggerId", "eventData"}
    trigger:complete      {"triggerId", "result"}
    trigger:error         {"triggerId", "error"}
    trigger:chain-error   {"sourceAgentId", "targetTriggerId", "error"}
"""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from cronbot.core.errors import ConfigurationError, NotFoundError, ValidationError
from cronbot.core.triggers.types import TRIGGER_TYPES, Trigger


class AgentRunner(Protocol):
    async def execute_agent(
        self, agent_id: str, trigger: str = ..., context: str | None = ...
    ) -> Any: ...


class TriggerRouter:
    """In-memory registry of triggers.

    Parameters
    ----------
    runner : AgentRunner, optional
        Executes the target agent. Without one, :meth:`fire` raises
        ConfigurationError.
    """

    def __init__(self, runner: AgentRunner | None = None):
        self.runner = runner
        self._triggers: dict[str, Trigger] = {}
        self._chain_listeners: dict[str, list[Trigger]] = {}
        self._listeners: dict[str, list[Callable[[Any], Any]]] = defaultdict(list)

    # ── Events ──────────────────────────────────────────────

    def on(self, event: str, callback: Callable[[Any], Any]) -> None:
        self._listeners[event].append(callback)

    def _emit(self, event: str, data: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(data)
            except Exception as e:
                logger.error(f"Listener for {event} failed: {e}")

    # ════════════════════════════════════════════════════════════
    # REGISTRY
    # ════════════════════════════════════════════════════════════

    def register(self, trigger: Trigger | dict[str, Any]) -> Trigger:
        """Add (or replace) a trigger.

        Raises
        ------
        ValidationError
            Missing id/type/agentId, unknown type, or a chain trigger
            without ``config.sourceAgentId``.
        """
        trigger = self._coerce(trigger)

        if trigger.id in self._triggers:
            self.unregister(trigger.id)

        self._triggers[trigger.id] = trigger
        if trigger.type == "chain":
            self._chain_listeners.setdefault(trigger.source_agent_id, []).append(trigger)

        logger.info(f"Registered {trigger.type} trigger {trigger.id} → agent {trigger.agent_id}")
        self._emit("trigger:registered", trigger)
        return trigger

    @staticmethod
    def _coerce(trigger: Trigger | dict[str, Any]) -> Trigger:
        if isinstance(trigger, Trigger):
            data = trigger.model_dump()
        else:
            data = dict(trigger)
            if "agentId" in data:
                data["agent_id"] = data.pop("agentId")

        if not data.get("id") or not data.get("type") or not data.get("agent_id"):
            raise ValidationError("Trigger requires id, type, and agentId")
        if data["type"] not in TRIGGER_TYPES:
            raise ValidationError(
                f"Unknown trigger type '{data['type']}' (expected one of: {', '.join(TRIGGER_TYPES)})"
            )
        try:
            trigger = Trigger.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid trigger: {e}") from e

        if trigger.type == "chain" and not trigger.source_agent_id:
            raise ValidationError("Chain trigger requires config.sourceAgentId")
        return trigger

    def unregister(self, trigger_id: str) -> None:
        trigger = self._triggers.pop(trigger_id, None)
        if trigger is None:
            return

        if trigger.type == "chain":
            source = trigger.source_agent_id
            remaining = [t for t in self._chain_listeners.get(source, []) if t.id != trigger_id]
            if remaining:
                self._chain_listeners[source] = remaining
            else:
                self._chain_listeners.pop(source, None)

        logger.info(f"Unregistered trigger {trigger_id}")
        self._emit("trigger:unregistered", trigger_id)

    def get_trigger(self, trigger_id: str) -> Trigger | None:
        return self._triggers.get(trigger_id)

    def list_triggers(self) -> list[Trigger]:
        return list(self._triggers.values())

    def get_triggers_for_agent(self, agent_id: str) -> list[Trigger]:
        return [t for t in self._triggers.values() if t.agent_id == agent_id]

    # ════════════════════════════════════════════════════════════
    # FIRING
    # ════════════════════════════════════════════════════════════

    async def fire(self, trigger_id: str, payload: dict[str, Any] | None = None) -> Any:
        """Run the trigger's agent with ``payload`` as trigger context.

        Chain triggers are not fired from here: the runner reports completion
        through :meth:`notify_agent_complete`.
        """
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            raise NotFoundError(f"Unknown trigger: {trigger_id}")

        self._emit("trigger:firing", {"triggerId": trigger_id, "eventData": payload or {}})
        try:
            if self.runner is None:
                raise ConfigurationError("No agent runner configured")
            logger.info(f"Firing {trigger.type} trigger {trigger_id} → agent {trigger.agent_id}")
            result = await self.runner.execute_agent(
                trigger.agent_id,
                trigger=trigger.type,
                context=build_trigger_context(payload),
            )
        except Exception as e:
            logger.error(f"Trigger {trigger_id} failed: {e}")
            self._emit("trigger:error", {"triggerId": trigger_id, "error": e})
            raise

        self._emit("trigger:complete", {"triggerId": trigger_id, "result": result})
        return result

    async def handle_webhook(
        self, source: str, event: str, payload: Any = None
    ) -> list[dict[str, Any]]:
        """Fire every webhook trigger registered for ``source``/``event``."""
        matching = [t for t in self._triggers.values() if t.matches_webhook(source, event)]
        if not matching:
            logger.debug(f"No webhook triggers for {source}/{event}")
            return []

        results: list[dict[str, Any]] = []
        for trigger in matching:
            try:
                result = await self.fire(
                    trigger.id, {"source": source, "event": event, "payload": payload}
                )
                results.append({"triggerId": trigger.id, "result": result})
            except Exception as e:
                results.append({"triggerId": trigger.id, "error": str(e)})
        return results

    async def notify_agent_complete(self, source_agent_id: str, result: Any) -> None:
        """Fire the chain triggers listening on ``source_agent_id``."""
        for trigger in list(self._chain_listeners.get(source_agent_id, [])):
            try:
                await self.fire(
                    trigger.id,
                    {"chainSource": source_agent_id, "previousResult": _result_payload(result)},
                )
            except Exception as e:
                self._emit(
                    "trigger:chain-error",
                    {"sourceAgentId": source_agent_id, "targetTriggerId": trigger.id, "error": e},
                )


def build_trigger_context(payload: dict[str, Any] | None) -> str | None:
    """Trigger context text handed to the agent, None for an empty payload."""
    if not payload:
        return None
    return f"Trigger event data:\n{json.dumps(payload, indent=2, default=str)}"


def _result_payload(result: Any) -> Any:
    """Compact view of an ExecutionResult for the next agent in a chain."""
    if result is None or not hasattr(result, "success"):
        return result

    payload: dict[str, Any] = {"success": result.success}
    run = getattr(result, "run", None)
    if run is not None:
        payload["runId"] = run.id
        payload["status"] = run.status
        if run.outcome is not None:
            payload["summary"] = run.outcome.summary
            if run.outcome.details:
                payload["details"] = run.outcome.details
        if run.files_created:
            payload["filesCreated"] = run.files_created
    if getattr(result, "error", None) is not None:
        payload["error"] = str(result.error)
    if getattr(result, "skipped", False):
        payload["skipped"] = True
    return payload
