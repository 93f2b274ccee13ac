"""Periodic consolidation sweep.

One APScheduler interval job runs ``ConsolidationEngine.sweep`` over every
child that owns memories.  Children are processed one at a time; a run that
is still going when the next one is due is skipped rather than stacked.
"""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from appu_memory.config import SchedulerConfig
from appu_memory.engine.consolidation import ConsolidationEngine
from appu_memory.engine.schemas import SweepResult

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "memory_consolidation_sweep"


class MemoryJobScheduler:
    """Runs the consolidation sweep on a fixed interval."""

    def __init__(
        self,
        consolidation: ConsolidationEngine,
        config: SchedulerConfig | None = None,
    ) -> None:
        self.scheduler = AsyncIOScheduler()
        self.consolidation = consolidation
        self.config = config or SchedulerConfig()
        self.is_running = False
        self.last_result: SweepResult | None = None

    def start(self) -> None:
        """Register the sweep job and start the scheduler (idempotent)."""
        if self.is_running:
            return
        job_options: dict = {}
        if self.config.run_on_start:
            job_options["next_run_time"] = datetime.now(timezone.utc)
        self.scheduler.add_job(
            self._run_sweep,
            "interval",
            hours=self.config.interval_hours,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **job_options,
        )
        self.scheduler.start()
        self.is_running = True
        logger.info(
            "Memory scheduler started, consolidating every %.2f hours",
            self.config.interval_hours,
        )

    def stop(self) -> None:
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Memory scheduler stopped")

    async def run_now(self) -> SweepResult | None:
        """Run one sweep immediately, outside the interval."""
        return await self._run_sweep()

    async def _run_sweep(self) -> SweepResult | None:
        try:
            result = await self.consolidation.sweep()
        except Exception:
            # child_ids() itself failed; per-child errors never reach here
            logger.exception("Consolidation sweep could not start")
            return None
        self.last_result = result
        if result.children_failed:
            logger.warning(
                "Consolidation sweep: %d of %d children failed",
                result.children_failed,
                result.children_failed + result.children_processed,
            )
        return result
