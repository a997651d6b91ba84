"""Event triggers — manual, webhook and agent-chain runs on top of cron."""

from cronbot.core.triggers.router import TriggerRouter
from cronbot.core.triggers.types import Trigger

__all__ = ["Trigger", "TriggerRouter"]
