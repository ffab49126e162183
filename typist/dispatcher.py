"""Batch dispatcher: one unit of typing work for one job.

process_batch() is the cooperative checkpoint of the scheduling loop. It
re-reads the job, and only a job that is still running gets a new plan
and a write. The index advances only after the writer confirms, and only
from the index the plan was built at, so a redelivered step can neither
skip nor double-apply a batch.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from typist.config import Config
from typist.db import Database
from typist.errors import ValidationError
from typist.models import (
    ACTIVE_STATUSES,
    AUTH_REVOKED,
    DISPATCH_RETRIES_EXHAUSTED,
    ENGINE_VALIDATION_ERROR,
    WRITER_FATAL,
    EventType,
    Job,
    JobStatus,
    utcnow,
)
from typist.planner import BatchPlan, build_batch_plan
from typist.writer import AuthRevoked, DocumentWriter, RateLimited, WriteFatal, WriteOk

log = logging.getLogger(__name__)

RATE_LIMIT = "RATE_LIMIT"
DISPATCH_FAILED = "DISPATCH_FAILED"


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    should_continue: bool
    error: str | None = None
    # Wait before the next step; set whenever should_continue is True.
    next_delay_ms: int | None = None


_HALT = DispatchResult(success=False, should_continue=False)


class BatchDispatcher:
    """Plans, writes and records one batch."""

    def __init__(
        self,
        db: Database,
        writer: DocumentWriter,
        config: Config,
        rng: random.Random | None = None,
    ) -> None:
        self._db = db
        self._writer = writer
        self._config = config
        self._rng = rng or random.Random()

    async def process_batch(
        self, job_id: str, owner_id: str, document_ref: str
    ) -> DispatchResult:
        job = await self._db.get_job(job_id)
        if job is None:
            log.warning("process_batch: job %s not found", job_id)
            return _HALT
        if job.owner_id != owner_id or job.document_ref != document_ref:
            log.warning("process_batch: job %s does not match owner/document", job_id)
            return _HALT
        if job.status is not JobStatus.RUNNING:
            log.debug("process_batch: job %s is %s, halting", job_id, job.status.value)
            return _HALT

        if job.current_index >= job.total_chars:
            await self._complete(job, job.current_index)
            return _HALT

        try:
            plan = build_batch_plan(
                job.full_text,
                job.current_index,
                job.total_chars,
                job.duration_minutes,
                job.typing_profile,
                job.target_wpm,
                rng=self._rng,
                min_interval_ms=self._config.min_batch_interval_ms,
            )
        except (ValidationError, ValueError) as exc:
            message = exc.message if isinstance(exc, ValidationError) else str(exc)
            return await self._fail(job, ENGINE_VALIDATION_ERROR, message)

        try:
            result = await self._writer.write(
                job.document_ref, plan.batch_text, plan.start_index
            )
        except Exception as exc:
            log.exception(
                "Writer raised for job %s at index %d", job.id, plan.start_index
            )
            return await self._dispatch_failed(job, exc)

        if isinstance(result, WriteOk):
            return await self._advance(job, plan)
        if isinstance(result, RateLimited):
            return await self._throttle(job, result)
        if isinstance(result, AuthRevoked):
            return await self._fail(job, AUTH_REVOKED, "Document access revoked")
        if isinstance(result, WriteFatal):
            return await self._fail(job, WRITER_FATAL, result.message)
        raise TypeError(f"Unexpected writer result: {result!r}")

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _advance(self, job: Job, plan: BatchPlan) -> DispatchResult:
        now = utcnow()
        async with self._db.transaction() as tx:
            advanced = await tx.advance_job(
                job.id,
                plan.start_index,
                plan.end_index,
                now,
                throttle_delay_ms=self._config.default_throttle_ms,
                dispatch_failures=0,
            )
            current = await tx.get_job(job.id)
        if not advanced:
            log.warning(
                "Job %s index moved past %d during write, not advancing",
                job.id, plan.start_index,
            )

        if current is None:
            return _HALT
        if current.status is not JobStatus.RUNNING:
            # Paused mid-write: the batch is recorded, and a job that is now
            # fully typed completes on its next step after resume.
            return DispatchResult(success=True, should_continue=False)
        if current.current_index >= current.total_chars:
            await self._complete(current, current.current_index)
            return DispatchResult(success=True, should_continue=False)
        return DispatchResult(
            success=True,
            should_continue=True,
            next_delay_ms=plan.next_delay_ms,
        )

    async def _complete(self, job: Job, final_index: int) -> None:
        now = utcnow()
        async with self._db.transaction() as tx:
            moved = await tx.transition_job(
                job.id,
                {JobStatus.RUNNING},
                JobStatus.COMPLETED,
                now,
                completed_at=now,
            )
            if not moved:
                return
            await tx.add_event(
                job.id, EventType.COMPLETED, {"currentIndex": final_index}, now
            )
            await tx.release_lock(job.owner_id, job.document_ref, job.id, now)
            await tx.cancel_job_timers(job.id)
        log.info("Job %s completed (%d chars)", job.id, final_index)

    async def _throttle(self, job: Job, result: RateLimited) -> DispatchResult:
        if result.retry_after_ms:
            delay = result.retry_after_ms
        else:
            delay = min(
                max(job.throttle_delay_ms * 2, self._config.default_throttle_ms),
                self._config.max_throttle_ms,
            )
        await self._db.update_job(job.id, throttle_delay_ms=delay)
        log.warning("Job %s rate limited, retrying in %d ms", job.id, delay)
        return DispatchResult(
            success=False, should_continue=True, error=RATE_LIMIT, next_delay_ms=delay
        )

    async def _fail(self, job: Job, error_code: str, message: str) -> DispatchResult:
        now = utcnow()
        async with self._db.transaction() as tx:
            moved = await tx.transition_job(
                job.id,
                ACTIVE_STATUSES,
                JobStatus.FAILED,
                now,
                error_code=error_code,
            )
            if moved:
                await tx.add_event(
                    job.id,
                    EventType.FAILED,
                    {
                        "error": error_code,
                        "message": message,
                        "currentIndex": job.current_index,
                    },
                    now,
                )
                await tx.release_lock(job.owner_id, job.document_ref, job.id, now)
                await tx.cancel_job_timers(job.id)
        if moved:
            log.info("Job %s failed: %s", job.id, error_code)
        return DispatchResult(success=False, should_continue=False, error=error_code)

    async def _dispatch_failed(self, job: Job, exc: Exception) -> DispatchResult:
        failures = job.dispatch_failures + 1
        now = utcnow()
        await self._db.add_event(
            job.id,
            EventType.DISPATCH_FAILED,
            {
                "error": type(exc).__name__,
                "message": str(exc),
                "attempt": failures,
                "currentIndex": job.current_index,
            },
            now,
        )
        if failures >= self._config.max_dispatch_failures:
            return await self._fail(
                job,
                DISPATCH_RETRIES_EXHAUSTED,
                f"Writer failed {failures} times in a row",
            )

        await self._db.update_job(job.id, now, dispatch_failures=failures)
        return DispatchResult(
            success=False,
            should_continue=True,
            error=DISPATCH_FAILED,
            next_delay_ms=max(job.throttle_delay_ms, self._config.min_batch_interval_ms),
        )
