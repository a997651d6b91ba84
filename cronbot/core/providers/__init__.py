"""Engine adapters."""

from cronbot.core.providers.litellm import LiteLLMEngine, setup_provider

__all__ = ["LiteLLMEngine", "setup_provider"]
