"""Batch execution of scheduled agents — engine boundary, executor, tool groups."""

from cronbot.agent.executor import AgentExecutor, ExecutionResult
from cronbot.agent.permissions import ToolGroupRegistry

__all__ = ["AgentExecutor", "ExecutionResult", "ToolGroupRegistry"]
