"""Engine boundary — the black box that interprets instructions and calls tools.

An engine receives an :class:`EngineRequest` and yields an ordered stream of
typed events::

    EngineEvent = ToolUse | ToolResult | Text | Usage | Result

Engines may yield the pydantic models or plain dicts with a ``type`` key;
:func:`parse_event` normalizes both.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Protocol, Union

from pydantic import BaseModel, Field, TypeAdapter


class ToolUse(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    tool: str
    input: dict[str, Any] = Field(default_factory=dict)
    call_id: str


class ToolResult(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    call_id: str
    result: Any = None
    is_error: bool = False


class Text(BaseModel):
    type: Literal["text"] = "text"
    content: str


class Usage(BaseModel):
    type: Literal["usage"] = "usage"
    input_tokens: int = 0
    output_tokens: int = 0


class Result(BaseModel):
    """Terminal event. ``status='error'`` fails the run."""

    type: Literal["result"] = "result"
    status: Literal["success", "error"] = "success"
    error: str | None = None


EngineEvent = Annotated[
    Union[ToolUse, ToolResult, Text, Usage, Result], Field(discriminator="type")
]

_event_adapter: TypeAdapter[EngineEvent] = TypeAdapter(EngineEvent)


def parse_event(raw: BaseModel | dict[str, Any]) -> EngineEvent:
    if isinstance(raw, (ToolUse, ToolResult, Text, Usage, Result)):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    return _event_adapter.validate_python(raw)


@dataclass
class EngineRequest:
    """Everything the engine needs for one unattended run."""

    instructions: str
    tool_groups: dict[str, dict[str, Any]] = field(default_factory=dict)
    pre_authorized_tools: list[str] = field(default_factory=list)
    max_wall_clock_s: float = 300.0
    workspace: str = ""
    # Batch mode: the engine must never prompt for permission
    interactive: bool = False


class Engine(Protocol):
    """Agent execution engine."""

    def check_configured(self) -> None:
        """Raise ConfigurationError if credentials/config are missing."""
        ...

    def run(
        self, request: EngineRequest, abort: asyncio.Event
    ) -> AsyncIterator[EngineEvent | dict[str, Any]]:
        """Stream events until done. Stop promptly once ``abort`` is set."""
        ...
