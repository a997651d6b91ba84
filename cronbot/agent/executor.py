"""AgentExecutor — run one scheduled agent to completion in batch mode."""

from __future__ import annotations

import asyncio
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from cronbot.agent.context import build_instructions, fold_memory
from cronbot.agent.engine import (
    Engine,
    EngineRequest,
    Result,
    Text,
    ToolResult,
    ToolUse,
    Usage,
    parse_event,
)
from cronbot.agent.outcome import ActionRecorder, extract_files_created, parse_outcome
from cronbot.agent.permissions import ToolGroupRegistry, get_pre_authorized_tools
from cronbot.core.errors import (
    EngineError,
    ExecutionTimeoutError,
    ToolCeilingExceeded,
    is_terminal,
)
from cronbot.store.models import RunErrorInfo, RunRecord, RunUsage, ScheduledAgent, utcnow

if TYPE_CHECKING:
    from cronbot.store.agents import AgentStore
    from cronbot.store.runs import RunHistory

RunStartHook = Callable[[RunRecord], Any]
RunCompleteHook = Callable[["ExecutionResult"], Any]


@dataclass
class ExecutionResult:
    """Outcome of one execution (or of a retry loop, or of a skipped fire)."""

    success: bool
    run: RunRecord | None = None
    error: BaseException | None = None
    skipped: bool = False
    skip_reason: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "skipReason": self.skip_reason,
            "attempts": self.attempts,
            "error": str(self.error) if self.error else None,
            "run": self.run.to_json_dict() if self.run else None,
        }


@dataclass
class _EngineOutput:
    text: str = ""
    usage: RunUsage | None = None


class AgentExecutor:
    """Executes scheduled agents unattended.

    Wraps the engine with batch-specific behavior:
      - memory context and workspace directive in the instructions
      - pre-authorized tools, no interactive permission prompts
      - wall-clock timeout and a hard tool-call ceiling
      - tool calls captured into the run record
      - stats and rolling memory updated after every run

    ``execute`` never raises: every path returns an :class:`ExecutionResult`
    and persists the run record.

    Parameters
    ----------
    agent_store : AgentStore
        Job definitions (stats and memory are written back here).
    run_history : RunHistory
        Destination of run records.
    engine : Engine
        Agent execution engine.
    tool_groups : ToolGroupRegistry, optional
        Global tool group registry. None = no tool groups.
    """

    def __init__(
        self,
        agent_store: AgentStore,
        run_history: RunHistory,
        engine: Engine,
        tool_groups: ToolGroupRegistry | None = None,
        *,
        timeout_s: float = 300.0,
        max_tool_calls: int = 60,
        max_retries: int = 3,
        backoff_base_s: float = 2.0,
    ):
        self.agent_store = agent_store
        self.run_history = run_history
        self.engine = engine
        self.tool_groups = tool_groups or ToolGroupRegistry()
        self.timeout_s = timeout_s
        self.max_tool_calls = max_tool_calls
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s

    # ════════════════════════════════════════════════════════════
    # SINGLE ATTEMPT
    # ════════════════════════════════════════════════════════════

    async def execute(
        self,
        agent: ScheduledAgent,
        *,
        trigger: str = "cron",
        context: str | None = None,
        attempt: int = 1,
        on_run_start: RunStartHook | None = None,
        on_run_complete: RunCompleteHook | None = None,
    ) -> ExecutionResult:
        """Run ``agent`` once and persist the resulting RunRecord."""
        run = RunRecord(agent_id=agent.id, trigger=trigger, attempt=attempt)
        recorder = ActionRecorder()
        logger.info(
            f"Executing agent: {agent.name} ({agent.id}) trigger={trigger} attempt={attempt}"
        )

        error: Exception | None = None
        output = _EngineOutput()
        try:
            self.engine.check_configured()
            _call_hook(on_run_start, run)

            tool_groups = self.tool_groups.resolve(agent.tool_groups)
            if agent.tool_groups and not tool_groups:
                logger.warning(
                    f"None of the tool groups of {agent.name} are available "
                    f"({', '.join(agent.tool_groups)}), running with basic capabilities only"
                )

            request = EngineRequest(
                instructions=build_instructions(agent, context),
                tool_groups=tool_groups,
                pre_authorized_tools=get_pre_authorized_tools(agent),
                max_wall_clock_s=self.timeout_s,
                workspace=agent.workspace_path,
            )
            logger.debug(
                f"Engine request for {agent.id}: {len(request.instructions)} chars, "
                f"groups={list(tool_groups)}, pre-authorized={len(request.pre_authorized_tools)}"
            )
            max_calls = agent.max_tool_calls or self.max_tool_calls
            output = await self._drive(request, recorder, max_calls)
        except Exception as e:
            error = e

        result = self._finish(agent, run, recorder, output, error)
        _call_hook(on_run_complete, result)
        return result

    async def _drive(
        self, request: EngineRequest, recorder: ActionRecorder, max_calls: int
    ) -> _EngineOutput:
        """Consume the engine stream, racing it against the wall-clock limit."""
        abort = asyncio.Event()
        output = _EngineOutput()

        async def consume() -> None:
            async for raw in self.engine.run(request, abort):
                event = parse_event(raw)
                if isinstance(event, ToolUse):
                    recorder.on_tool_use(event)
                    if recorder.tool_calls > max_calls:
                        abort.set()
                        raise ToolCeilingExceeded(max_calls)
                elif isinstance(event, ToolResult):
                    recorder.on_tool_result(event)
                elif isinstance(event, Text):
                    if event.content.strip():
                        output.text = event.content
                elif isinstance(event, Usage):
                    usage = output.usage or RunUsage()
                    output.usage = RunUsage(
                        input_tokens=usage.input_tokens + event.input_tokens,
                        output_tokens=usage.output_tokens + event.output_tokens,
                    )
                elif isinstance(event, Result):
                    if event.status == "error":
                        raise EngineError(event.error or "Engine reported an error")
                    break

        task = asyncio.ensure_future(consume())
        done, _ = await asyncio.wait({task}, timeout=self.timeout_s)
        if task not in done:
            abort.set()
            task.cancel()
            task.add_done_callback(_drain)
            raise ExecutionTimeoutError(self.timeout_s)
        task.result()
        return output

    # ── Persistence ─────────────────────────────────────────

    def _finish(
        self,
        agent: ScheduledAgent,
        run: RunRecord,
        recorder: ActionRecorder,
        output: _EngineOutput,
        error: Exception | None,
    ) -> ExecutionResult:
        completed = utcnow()
        run.completed_at = completed
        run.duration_ms = int((completed - run.started_at).total_seconds() * 1000)
        run.actions = recorder.actions
        run.files_created = extract_files_created(recorder.actions, agent.workspace_path)
        run.usage = output.usage
        run.outcome = parse_outcome(recorder.actions, output.text, error)

        if error is None:
            run.status = "success"
            logger.info(f"Agent {agent.name} completed in {run.duration_ms}ms: {run.outcome.summary[:100]}")
        else:
            run.status = "error"
            run.error = RunErrorInfo(
                message=str(error) or type(error).__name__,
                type=type(error).__name__,
                stack="".join(traceback.format_exception(error)),
                failed_action=recorder.last_tool,
            )
            logger.error(f"Agent {agent.name} failed: {type(error).__name__}: {error}")

        try:
            self.run_history.save_run(run)
        except Exception as e:
            logger.error(f"Failed to save run {run.id} for {agent.id}: {e}")

        current = self.agent_store.get_agent_by_id(agent.id) or agent
        try:
            if error is None:
                stats = {
                    "last_run_at": completed,
                    "run_count": current.run_count + 1,
                    "last_error": None,
                }
                # A pause made while the run was in flight stands
                if current.status == "error":
                    stats["status"] = "active"
                self.agent_store.update_stats(agent.id, stats)
                self._update_memory(current, run)
            else:
                self.agent_store.update_stats(agent.id, {
                    "last_run_at": completed,
                    "error_count": current.error_count + 1,
                    "status": "error",
                    "last_error": run.error.message,
                })
        except Exception as e:
            logger.error(f"Failed to update stats for {agent.id}: {e}")

        return ExecutionResult(success=error is None, run=run, error=error, attempts=1)

    def _update_memory(self, agent: ScheduledAgent, run: RunRecord) -> None:
        """Fold the run into the agent's rolling memory. Never fails the run."""
        try:
            self.agent_store.update_memory(agent.id, fold_memory(agent, run))
            logger.debug(f"Updated memory for agent: {agent.name}")
        except Exception as e:
            logger.error(f"Failed to update memory for {agent.name}: {e}")

    # ════════════════════════════════════════════════════════════
    # RETRY
    # ════════════════════════════════════════════════════════════

    async def execute_with_retry(
        self,
        agent: ScheduledAgent,
        max_retries: int | None = None,
        *,
        trigger: str = "cron",
        context: str | None = None,
        on_run_start: RunStartHook | None = None,
        on_run_complete: RunCompleteHook | None = None,
    ) -> ExecutionResult:
        """Execute with exponential backoff (2s, 4s, 8s ...) between attempts.

        Timeouts, tool-ceiling and configuration errors end the loop at once.
        """
        max_retries = max_retries or self.max_retries
        result = ExecutionResult(success=False)

        for attempt in range(max_retries):
            logger.info(f"Attempt {attempt + 1}/{max_retries} for agent: {agent.name}")
            result = await self.execute(
                agent,
                trigger=trigger,
                context=context,
                attempt=attempt + 1,
                on_run_start=on_run_start,
                on_run_complete=on_run_complete,
            )
            result.attempts = attempt + 1
            if result.success:
                return result

            if is_terminal(result.error):
                logger.warning(
                    f"{type(result.error).__name__} for {agent.name}, not retrying"
                )
                break

            if attempt < max_retries - 1:
                delay = self.backoff_base_s * 2**attempt
                logger.info(f"Waiting {delay:g}s before retrying {agent.name}")
                await asyncio.sleep(delay)

        return result


def _call_hook(hook: Callable[[Any], Any] | None, arg: Any) -> None:
    if hook is None:
        return
    try:
        hook(arg)
    except Exception as e:
        logger.error(f"Run hook {getattr(hook, '__name__', hook)} failed: {e}")


def _drain(task: asyncio.Future) -> None:
    """Retrieve the exception of an abandoned engine task."""
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned engine task ended with: {task.exception()}")
