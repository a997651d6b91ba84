"""AgentScheduler — APScheduler cron registrations for file-backed agent jobs."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.base import JobLookupError
from loguru import logger

from cronbot.agent.executor import ExecutionResult
from cronbot.core.config.schema import SchedulerConfig
from cronbot.core.cron.expr import get_next_run_time, min_fire_interval, parse_cron, validate_cron
from cronbot.core.cron.types import CronValidation, ScheduledJobInfo, SchedulerStatus
from cronbot.core.errors import NotFoundError, ValidationError
from cronbot.store.models import ScheduledAgent, utcnow

if TYPE_CHECKING:
    from cronbot.agent.executor import AgentExecutor
    from cronbot.core.triggers.router import TriggerRouter
    from cronbot.store.agents import AgentStore

_RATE_WINDOW_S = 3600.0


class AgentScheduler:
    """Cron scheduling for scheduled agents.

    Agent files are the source of truth; APScheduler only holds one
    CronTrigger job per active agent. Each fire goes through
    :meth:`execute_agent`, which enforces:

      - at most one in-flight run per agent (extra fires are dropped)
      - no chained run of a job that is upstream in the same chain
      - ``maxRunsPerHour`` for every trigger except manual
      - fresh agent state read from the store on every fire

    Parameters
    ----------
    agent_store : AgentStore
        Job definitions.
    executor : AgentExecutor
        Runs a job (with retry).
    config : SchedulerConfig, optional
        Catch-up policy and APScheduler misfire settings.
    emit_event : callable, optional
        Receives ``scheduled_agent:run_started`` / ``run_completed`` dicts.
    trigger_router : TriggerRouter, optional
        Notified after every run so chain triggers can fire.
    """

    def __init__(
        self,
        agent_store: AgentStore,
        executor: AgentExecutor,
        config: SchedulerConfig | None = None,
        emit_event: Callable[[dict[str, Any]], Any] | None = None,
        trigger_router: TriggerRouter | None = None,
    ):
        self.agent_store = agent_store
        self.executor = executor
        self.config = config or SchedulerConfig()
        self.emit_event = emit_event
        self.trigger_router = trigger_router

        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": self.config.misfire_grace_time_s,
            }
        )
        self._jobs: set[str] = set()
        self._running: set[str] = set()
        # Jobs whose chain triggers are being fired (ancestors of a chained run)
        self._chaining: Counter[str] = Counter()
        self._recent_runs: dict[str, list[float]] = {}
        self._catchup_task: asyncio.Task | None = None

    # ════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ════════════════════════════════════════════════════════════

    async def initialize(self) -> list[ScheduledAgent]:
        """Schedule every active agent and start catch-up for missed runs.

        Returns the agents selected for catch-up.
        """
        agents = self.agent_store.get_all_active_agents()
        logger.info(f"Found {len(agents)} active agents")

        now = utcnow()
        missed: list[ScheduledAgent] = []
        for agent in agents:
            was_due = agent.next_run_at is not None and agent.next_run_at < now
            try:
                self.schedule_agent(agent)
            except ValidationError as e:
                logger.error(f"Failed to schedule {agent.name}: {e}")
                continue
            if was_due and self._wants_catch_up(agent):
                missed.append(agent)

        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(f"AgentScheduler started with {len(self._jobs)} jobs")

        if missed:
            logger.info(f"Found {len(missed)} agents with missed runs, starting catch-up")
            self._catchup_task = asyncio.create_task(self.run_catch_up(missed))
        return missed

    def _wants_catch_up(self, agent: ScheduledAgent) -> bool:
        policy = self.config.catchup
        if policy == "never":
            return False
        if policy == "always":
            return True
        interval = min_fire_interval(agent.schedule.cron, agent.schedule.timezone)
        if interval is not None and interval < timedelta(seconds=self.config.catchup_min_interval_s):
            logger.debug(f"No catch-up for {agent.name}: fires every {interval}")
            return False
        return True

    async def run_catch_up(self, missed: list[ScheduledAgent]) -> None:
        """One catch-up run per missed agent, however many fires were missed."""
        for i, agent in enumerate(missed):
            if agent.last_run_at:
                hours = round((utcnow() - agent.last_run_at).total_seconds() / 3600)
                logger.info(f"Catch-up: {agent.name} (missed ~{hours} hours)")
            else:
                logger.info(f"Catch-up: {agent.name}")

            await self.execute_agent(agent.id, trigger="catchup")

            if i < len(missed) - 1:
                await asyncio.sleep(self.config.catchup_delay_s)
        logger.info("Catch-up complete")

    def shutdown(self) -> None:
        """Stop all cron jobs."""
        if self._catchup_task and not self._catchup_task.done():
            self._catchup_task.cancel()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._jobs.clear()
        logger.info("AgentScheduler stopped")

    # ════════════════════════════════════════════════════════════
    # REGISTRATION
    # ════════════════════════════════════════════════════════════

    @staticmethod
    def validate_cron(expr: str, timezone: str = "UTC") -> CronValidation:
        return validate_cron(expr, timezone)

    def schedule_agent(self, agent: ScheduledAgent) -> None:
        """Register (or replace) the cron job of an active agent.

        Raises
        ------
        ValidationError
            Invalid cron expression or timezone.
        """
        if agent.status != "active":
            logger.info(f"Skipping non-active agent: {agent.name} ({agent.status})")
            return

        trigger = parse_cron(agent.schedule.cron, agent.schedule.timezone)
        self._scheduler.add_job(
            self._on_cron_fire,
            trigger=trigger,
            id=agent.id,
            args=[agent.id],
            replace_existing=True,
        )
        self._jobs.add(agent.id)
        logger.info(
            f"Scheduled: {agent.name} ({agent.id}) cron=\"{agent.schedule.cron}\" "
            f"tz={agent.schedule.timezone}"
        )
        self._update_next_run(agent)

    def unschedule_agent(self, agent_id: str) -> None:
        if agent_id not in self._jobs:
            return
        try:
            self._scheduler.remove_job(agent_id)
        except JobLookupError:
            pass
        self._jobs.discard(agent_id)
        logger.info(f"Unscheduled agent: {agent_id}")

    def reschedule_agent(self, agent: ScheduledAgent) -> None:
        self.unschedule_agent(agent.id)
        self.schedule_agent(agent)

    def _update_next_run(self, agent: ScheduledAgent) -> None:
        try:
            next_run = get_next_run_time(agent.schedule.cron, agent.schedule.timezone)
            self.agent_store.update_stats(agent.id, {"next_run_at": next_run})
        except Exception as e:
            logger.error(f"Failed to update nextRunAt for {agent.id}: {e}")

    # ════════════════════════════════════════════════════════════
    # EXECUTION
    # ════════════════════════════════════════════════════════════

    async def _on_cron_fire(self, agent_id: str) -> None:
        await self.execute_agent(agent_id, trigger="cron")

    def _rate_limited(self, agent: ScheduledAgent) -> str | None:
        """Skip reason if the agent used up its runs for the last hour."""
        cutoff = time.time() - _RATE_WINDOW_S
        recent = [t for t in self._recent_runs.get(agent.id, []) if t > cutoff]
        self._recent_runs[agent.id] = recent
        if len(recent) >= agent.max_runs_per_hour:
            return f"Skipped: {len(recent)}/{agent.max_runs_per_hour} runs in the last hour"
        return None

    def _record_run(self, agent_id: str) -> None:
        self._recent_runs.setdefault(agent_id, []).append(time.time())

    async def execute_agent(
        self,
        agent_id: str,
        trigger: str = "cron",
        context: str | None = None,
    ) -> ExecutionResult | None:
        """Run an agent if it is active, idle and within its rate limit.

        Returns None when nothing ran because the agent is already running,
        unknown, or not active, or because a chained run targets a job
        upstream in the same chain. Chain triggers fire after the job has
        left the running set. Never raises.
        """
        if agent_id in self._running:
            logger.info(f"Agent {agent_id} is already running, skipping this {trigger} fire")
            return None
        if trigger == "chain" and self._chaining[agent_id]:
            logger.info(f"Agent {agent_id} is upstream in this chain, skipping chained run")
            return None

        self._running.add(agent_id)
        try:
            agent = self.agent_store.get_agent_by_id(agent_id)
            if agent is None:
                logger.warning(f"Agent not found: {agent_id}")
                return None
            if agent.status != "active":
                logger.info(f"Agent {agent.name} is not active ({agent.status}), skipping")
                return None

            if trigger != "manual":
                reason = self._rate_limited(agent)
                if reason:
                    logger.warning(f"{agent.name}: {reason}")
                    return ExecutionResult(success=False, skipped=True, skip_reason="rate_limit")

            self._record_run(agent_id)
            logger.info(f"Executing agent: {agent.name} (trigger={trigger})")

            result = await self.executor.execute_with_retry(
                agent,
                trigger=trigger,
                context=context,
                on_run_start=lambda run: self._emit({
                    "type": "scheduled_agent:run_started",
                    "agentId": agent.id,
                    "runId": run.id,
                    "startedAt": run.started_at.isoformat(),
                    "trigger": trigger,
                }),
                on_run_complete=lambda res: self._emit({
                    "type": "scheduled_agent:run_completed",
                    "agentId": agent.id,
                    "runId": res.run.id if res.run else None,
                    "status": res.run.status if res.run else "error",
                    "error": str(res.error) if res.error else None,
                }),
            )

            if result.success:
                logger.info(f"Agent {agent.name} executed successfully")
            else:
                logger.error(f"Agent {agent.name} failed after {result.attempts} attempt(s): {result.error}")

            self._update_next_run(agent)
        except Exception as e:
            logger.error(f"Error executing agent {agent_id}: {e}")
            return ExecutionResult(success=False, error=e)
        finally:
            self._running.discard(agent_id)

        if self.trigger_router is not None:
            await self._notify_chain(agent_id, result)
        return result

    async def _notify_chain(self, agent_id: str, result: ExecutionResult) -> None:
        self._chaining[agent_id] += 1
        try:
            await self.trigger_router.notify_agent_complete(agent_id, result)
        except Exception as e:
            logger.error(f"Chain notification for {agent_id} failed: {e}")
        finally:
            self._chaining[agent_id] -= 1
            if not self._chaining[agent_id]:
                del self._chaining[agent_id]

    async def trigger_agent(self, agent_id: str) -> ExecutionResult | None:
        """Manual run: bypasses the rate limit, respects single-flight."""
        agent = self.agent_store.get_agent_by_id(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        logger.info(f"Manually triggering agent: {agent.name}")
        return await self.execute_agent(agent_id, trigger="manual")

    def _emit(self, event: dict[str, Any]) -> None:
        if self.emit_event is None:
            return
        try:
            self.emit_event(event)
        except Exception as e:
            logger.error(f"emit_event failed for {event.get('type')}: {e}")

    # ════════════════════════════════════════════════════════════
    # STATUS
    # ════════════════════════════════════════════════════════════

    def is_scheduled(self, agent_id: str) -> bool:
        return agent_id in self._jobs

    def is_running(self, agent_id: str) -> bool:
        return agent_id in self._running

    def get_scheduled_jobs(self) -> list[ScheduledJobInfo]:
        return [
            ScheduledJobInfo(agent_id=agent_id, scheduled=True, running=agent_id in self._running)
            for agent_id in sorted(self._jobs)
        ]

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            total_jobs=len(self._jobs),
            running_jobs=len(self._running),
            jobs=self.get_scheduled_jobs(),
        )
