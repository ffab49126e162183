"""Durable scheduling loop.

Each job's loop is a chain of continuation timers. A "start" or "batch"
timer fires, run_step() dispatches one batch, and if the job should keep
going the next "batch" continuation is scheduled after the plan's pacing
delay (or the throttle delay after a rate limit). Nothing sleeps in
process: a job between batches is just a row in the timers table.
"""

from __future__ import annotations

import logging

from typist.config import Config
from typist.db import Database
from typist.dispatcher import BatchDispatcher, DispatchResult
from typist.models import JobStatus
from typist.timers import BATCH, START, TimerQueue

log = logging.getLogger(__name__)


class SchedulingLoop:
    def __init__(
        self,
        db: Database,
        dispatcher: BatchDispatcher,
        timers: TimerQueue,
        config: Config,
    ) -> None:
        self._db = db
        self._dispatcher = dispatcher
        self._timers = timers
        self._config = config

    async def handle_timer(
        self, timer_type: str, target_id: str, payload: dict | None
    ) -> None:
        """Timer callback: route continuation events to run_step."""
        if timer_type in (START, BATCH):
            await self.run_step(target_id)
        else:
            log.warning("Unknown timer type: %s", timer_type)

    async def run_step(self, job_id: str) -> DispatchResult | None:
        """Run one step of a job's loop. Returns None if the job has halted."""
        job = await self._db.get_job(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            log.debug("Loop for job %s halted", job_id)
            return None

        result = await self._dispatcher.process_batch(
            job.id, job.owner_id, job.document_ref
        )
        if result.should_continue:
            delay_ms = result.next_delay_ms or self._config.min_batch_interval_ms
            await self._timers.reschedule(BATCH, job.id, delay_ms / 1000)
        return result

    async def kick(self, job_id: str, event: str = BATCH, delay_seconds: float = 0) -> None:
        """Emit a continuation for a job, replacing any pending one."""
        await self._timers.reschedule(event, job_id, delay_seconds)

    async def recover(self) -> int:
        """Restart loops for running jobs that lost their continuation.

        Called once on startup. Returns the number of loops restarted.
        """
        restarted = 0
        for job in await self._db.get_jobs_by_status(JobStatus.RUNNING):
            if await self._timers.has_pending(job.id):
                continue
            await self.kick(job.id)
            restarted += 1
        if restarted:
            log.info("Recovered %d running job(s) without a continuation", restarted)
        return restarted
