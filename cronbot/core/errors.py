"""Error taxonomy for job definition, storage and batch execution."""

from __future__ import annotations


class CronbotError(Exception):
    """Base class for all cronbot errors."""


class ValidationError(CronbotError, ValueError):
    """Bad job definition, run record or trigger. Never persisted."""


class NotFoundError(CronbotError, LookupError):
    """Unknown agent, user, run or trigger id."""


class ConfigurationError(CronbotError):
    """Missing engine credentials or configuration. Not retried."""


class ExecutionTimeoutError(CronbotError, TimeoutError):
    """Engine exceeded the wall-clock limit. Not retried."""

    def __init__(self, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(f"Execution timeout ({timeout_s:g}s)")


class ToolCeilingExceeded(CronbotError):
    """Engine issued more tool calls than allowed. Not retried."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Tool call limit exceeded ({limit})")


class EngineError(CronbotError):
    """Transient engine failure (network, tool error). Retried with backoff."""


# Errors that end a retry loop after the current attempt
TERMINAL_ERRORS: tuple[type[BaseException], ...] = (
    ExecutionTimeoutError,
    ToolCeilingExceeded,
    ConfigurationError,
)


def is_terminal(error: BaseException | None) -> bool:
    """True if ``error`` must not be retried."""
    return isinstance(error, TERMINAL_ERRORS)
