"""LiteLLM engine — default single-turn engine for scheduled agents.

Sends the effective instructions to the configured model and streams the
reply back as engine events. It does not execute tools: tool groups are
listed in the system prompt only, so jobs that need MCP tools should run on
an engine that speaks the tool transports.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from typing import Any

import litellm
from loguru import logger

from cronbot.agent.engine import EngineEvent, EngineRequest, Result, Text, Usage
from cronbot.core.config.schema import Config
from cronbot.core.errors import ConfigurationError, EngineError

# Suppress litellm noise
litellm.suppress_debug_info = True

_SYSTEM_PROMPT = (
    "You are an autonomous agent running a scheduled job. "
    "No human is watching this run: do not ask questions or wait for "
    "confirmation, finish the task and report the result."
)


def setup_provider(config: Config) -> None:
    """Set env vars for LiteLLM from config. Call once at startup."""
    _set_key("ANTHROPIC_API_KEY", config.providers.anthropic.api_key)
    _set_key("OPENAI_API_KEY", config.providers.openai.api_key)
    _set_key("OPENROUTER_API_KEY", config.providers.openrouter.api_key)
    _set_key("DEEPSEEK_API_KEY", config.providers.deepseek.api_key)
    _set_key("GROQ_API_KEY", config.providers.groq.api_key)
    _set_key("GEMINI_API_KEY", config.providers.gemini.api_key)


class LiteLLMEngine:
    """Engine backed by ``litellm.acompletion``."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self.model = config.engine.model
        setup_provider(config)

    def check_configured(self) -> None:
        if not self.config.get_api_key(self.model):
            raise ConfigurationError(
                f"No API key configured for model {self.model}. "
                f"Set providers.<name>.api_key in config.yaml or CRONBOT_PROVIDERS__<NAME>__API_KEY."
            )

    def _system_prompt(self, request: EngineRequest) -> str:
        parts = [_SYSTEM_PROMPT]
        if request.tool_groups:
            parts.append(f"Tool groups assigned to this job: {', '.join(request.tool_groups)}.")
        if request.workspace:
            parts.append(f"Working directory: {request.workspace}")
        return "\n\n".join(parts)

    async def run(
        self, request: EngineRequest, abort: asyncio.Event
    ) -> AsyncIterator[EngineEvent]:
        if abort.is_set():
            yield Result(status="error", error="Aborted before start")
            return

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self._system_prompt(request)},
                {"role": "user", "content": request.instructions},
            ],
            "temperature": self.config.engine.temperature,
            "max_tokens": self.config.engine.max_tokens,
            "timeout": request.max_wall_clock_s,
        }
        api_base = self.config.get_api_base(self.model)
        if api_base:
            kwargs["api_base"] = api_base

        try:
            response = await litellm.acompletion(**kwargs)
        except litellm.AuthenticationError as e:
            raise ConfigurationError(f"LLM authentication failed: {e}") from e
        except Exception as e:
            logger.error(f"LLM error: {e}")
            raise EngineError(f"Error calling LLM: {e}") from e

        if abort.is_set():
            return

        usage = getattr(response, "usage", None)
        if usage is not None:
            yield Usage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            )

        content = response.choices[0].message.content or ""
        if content:
            yield Text(content=content)
        yield Result(status="success")


def _set_key(env_name: str, value: str) -> None:
    if value:
        os.environ.setdefault(env_name, value)
