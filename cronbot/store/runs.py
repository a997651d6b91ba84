"""RunHistory — append-only execution records.

Layout: ``{runs_dir}/{agent_id}/{started_at}.json`` with ``:`` replaced by
``-`` so names sort chronologically and are safe on every filesystem.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from cronbot.core.errors import ValidationError
from cronbot.store._files import read_json, write_json
from cronbot.store.models import RunRecord, RunStats, utcnow


def run_filename(started_at: datetime) -> str:
    return f"{started_at.isoformat().replace(':', '-')}.json"


class RunHistory:
    """File-backed store for RunRecords, one directory per agent."""

    def __init__(self, runs_dir: str | Path):
        self.runs_dir = Path(runs_dir)
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    def _run_dir(self, agent_id: str) -> Path:
        return self.runs_dir / agent_id

    def _run_files(self, agent_id: str) -> list[Path]:
        run_dir = self._run_dir(agent_id)
        if not run_dir.is_dir():
            return []
        return sorted(run_dir.glob("*.json"), reverse=True)

    # ── Write ───────────────────────────────────────────────

    def save_run(self, run: RunRecord | dict[str, Any]) -> RunRecord:
        """Persist a run record. Requires ``agentId`` and ``startedAt``."""
        if isinstance(run, dict):
            if not (run.get("agentId") or run.get("agent_id")) or not (
                run.get("startedAt") or run.get("started_at")
            ):
                raise ValidationError("Run must include agentId and startedAt")
            try:
                run = RunRecord.model_validate(run)
            except PydanticValidationError as e:
                raise ValidationError(str(e)) from e
        if not run.agent_id:
            raise ValidationError("Run must include agentId and startedAt")

        path = self._run_dir(run.agent_id) / run_filename(run.started_at)
        write_json(path, run.to_json_dict())
        logger.debug(f"Run saved: {run.id} ({run.status}) → {path.name}")
        return run

    # ── Read ────────────────────────────────────────────────

    def get_run_history(self, agent_id: str, limit: int = 30) -> list[RunRecord]:
        """Most recent runs first."""
        return [
            RunRecord.model_validate(read_json(p))
            for p in self._run_files(agent_id)[:limit]
        ]

    def get_run(self, agent_id: str, run_id: str) -> RunRecord | None:
        """Find a run by id or by its ``startedAt`` timestamp."""
        for p in self._run_files(agent_id):
            run = RunRecord.model_validate(read_json(p))
            if run_id in (run.id, run.started_at.isoformat()):
                return run
        return None

    def get_latest_run(self, agent_id: str) -> RunRecord | None:
        runs = self.get_run_history(agent_id, limit=1)
        return runs[0] if runs else None

    def get_run_stats(self, agent_id: str) -> RunStats:
        """Aggregate over the last 100 runs."""
        runs = self.get_run_history(agent_id, limit=100)
        if not runs:
            return RunStats()

        return RunStats(
            total_runs=len(runs),
            success_count=sum(1 for r in runs if r.status == "success"),
            error_count=sum(1 for r in runs if r.status == "error"),
            average_duration_ms=round(sum(r.duration_ms for r in runs) / len(runs)),
            last_run=runs[0],
        )

    # ── Maintenance ─────────────────────────────────────────

    def cleanup(self, days_to_keep: int = 30) -> int:
        """Delete runs started more than ``days_to_keep`` days ago. Returns count."""
        cutoff = utcnow() - timedelta(days=days_to_keep)
        deleted = 0
        for run_dir in self.runs_dir.iterdir():
            if not run_dir.is_dir():
                continue
            for p in run_dir.glob("*.json"):
                run = RunRecord.model_validate(read_json(p))
                if run.started_at < cutoff:
                    p.unlink()
                    deleted += 1
        if deleted:
            logger.info(f"Run history cleanup: {deleted} runs older than {days_to_keep} days removed")
        return deleted

    def delete_agent_history(self, agent_id: str) -> int:
        """Remove every run of an agent. Returns number of runs deleted."""
        run_dir = self._run_dir(agent_id)
        if not run_dir.is_dir():
            return 0
        files = list(run_dir.glob("*.json"))
        for p in files:
            p.unlink()
        if not any(run_dir.iterdir()):
            run_dir.rmdir()
        return len(files)

    def get_storage_stats(self) -> dict[str, Any]:
        total_size = 0
        total_files = 0
        for p in self.runs_dir.glob("*/*.json"):
            total_size += p.stat().st_size
            total_files += 1
        return {
            "totalSize": total_size,
            "totalFiles": total_files,
            "totalSizeMB": round(total_size / 1024 / 1024, 2),
        }
