"""Configuration module."""

from cronbot.core.config.loader import load_config
from cronbot.core.config.schema import Config

__all__ = ["Config", "load_config"]
