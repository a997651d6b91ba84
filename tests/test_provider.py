"""Tests for the LiteLLM engine."""

import asyncio
import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import litellm
import pytest

from cronbot.agent.engine import EngineRequest, Result, Text, Usage
from cronbot.core.config.schema import Config
from cronbot.core.errors import ConfigurationError, EngineError
from cronbot.core.providers.litellm import LiteLLMEngine, setup_provider

_PATCH_COMPLETION = "litellm.acompletion"


# ── Fixtures ──────────────────────────────────────────────


@pytest.fixture
def cfg():
    return Config(
        engine={"model": "anthropic/claude-test", "temperature": 0.2, "max_tokens": 512},
        providers={"anthropic": {"api_key": "sk-ant-test"}},
    )


def _make_response(content="Digest posted", prompt_tokens=10, completion_tokens=5):
    msg = SimpleNamespace(content=content)
    usage = SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return SimpleNamespace(choices=[SimpleNamespace(message=msg)], usage=usage)


def _request(**kwargs):
    return EngineRequest(instructions="Write the digest", workspace="/ws/job", **kwargs)


async def _collect(engine, request, abort=None):
    return [e async for e in engine.run(request, abort or asyncio.Event())]


# ── Configuration ─────────────────────────────────────────


def test_check_configured(cfg):
    LiteLLMEngine(cfg).check_configured()


def test_check_configured_without_key():
    engine = LiteLLMEngine(Config(engine={"model": "anthropic/claude-test"}))
    with pytest.raises(ConfigurationError):
        engine.check_configured()


def test_setup_provider_sets_env(cfg, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    setup_provider(cfg)

    assert os.environ["ANTHROPIC_API_KEY"] == "sk-ant-test"
    assert "OPENAI_API_KEY" not in os.environ


def test_setup_provider_keeps_existing_env(cfg, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "from-shell")
    setup_provider(cfg)
    assert os.environ["ANTHROPIC_API_KEY"] == "from-shell"


# ── run ───────────────────────────────────────────────────


async def test_run_yields_usage_text_result(cfg):
    engine = LiteLLMEngine(cfg)
    with patch(_PATCH_COMPLETION, new_callable=AsyncMock, return_value=_make_response()) as mock:
        events = await _collect(engine, _request(tool_groups={"slack": {}}))

    assert events == [
        Usage(input_tokens=10, output_tokens=5),
        Text(content="Digest posted"),
        Result(status="success"),
    ]

    kwargs = mock.call_args.kwargs
    assert kwargs["model"] == "anthropic/claude-test"
    assert kwargs["temperature"] == 0.2
    assert kwargs["max_tokens"] == 512
    assert kwargs["messages"][1] == {"role": "user", "content": "Write the digest"}
    system = kwargs["messages"][0]["content"]
    assert "slack" in system
    assert "/ws/job" in system
    assert "api_base" not in kwargs


async def test_run_empty_content(cfg):
    engine = LiteLLMEngine(cfg)
    with patch(_PATCH_COMPLETION, new_callable=AsyncMock, return_value=_make_response(content=None)):
        events = await _collect(engine, _request())

    assert [e.type for e in events] == ["usage", "result"]


async def test_run_openrouter_api_base():
    cfg = Config(
        engine={"model": "openrouter/moonshotai/kimi-k2"},
        providers={"openrouter": {"api_key": "sk-or"}},
    )
    with patch(_PATCH_COMPLETION, new_callable=AsyncMock, return_value=_make_response()) as mock:
        await _collect(LiteLLMEngine(cfg), _request())

    assert mock.call_args.kwargs["api_base"] == "https://openrouter.ai/api/v1"


async def test_run_error_becomes_engine_error(cfg):
    engine = LiteLLMEngine(cfg)
    with patch(_PATCH_COMPLETION, new_callable=AsyncMock, side_effect=RuntimeError("connection reset")):
        with pytest.raises(EngineError, match="connection reset"):
            await _collect(engine, _request())


async def test_run_auth_error_is_configuration_error(cfg):
    engine = LiteLLMEngine(cfg)
    error = litellm.AuthenticationError(
        message="invalid x-api-key", llm_provider="anthropic", model="claude-test"
    )
    with patch(_PATCH_COMPLETION, new_callable=AsyncMock, side_effect=error):
        with pytest.raises(ConfigurationError):
            await _collect(engine, _request())


async def test_run_aborted_before_start(cfg):
    abort = asyncio.Event()
    abort.set()
    with patch(_PATCH_COMPLETION, new_callable=AsyncMock) as mock:
        events = await _collect(LiteLLMEngine(cfg), _request(), abort)

    assert events == [Result(status="error", error="Aborted before start")]
    mock.assert_not_called()
