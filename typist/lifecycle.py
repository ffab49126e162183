"""Job lifecycle: the control surface behind the HTTP API.

start/pause/resume/stop are each one transaction on the job store. The
document lock is read and written inside the same transaction that
creates or resumes a job, so two requests can never both believe they
hold a document. Loops are (re)started by emitting a continuation after
the transaction commits; a commit whose continuation is lost is picked up
by SchedulingLoop.recover() on the next startup.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta

from typist.config import Config
from typist.db import Database, Transaction
from typist.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from typist.models import (
    ACTIVE_STATUSES,
    STUCK_JOB,
    EventType,
    Job,
    JobStatus,
    LockState,
    utcnow,
)
from typist.profiles import TypingProfile, normalize_test_wpm, validate_engine_inputs
from typist.scheduler import SchedulingLoop
from typist.tiers import LimitsProvider, PlanTier
from typist.timers import BATCH, START

log = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 10
MAX_DURATION_MINUTES = 360

LIST_LIMIT = 50
EVENTS_LIMIT = 50

STATS_RANGES = {"7d": 7, "30d": 30, "all": None}

STOPPABLE_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.PAUSED})


class JobManager:
    """Start, pause, resume, stop and query typing jobs."""

    def __init__(
        self,
        db: Database,
        scheduler: SchedulingLoop,
        limits: LimitsProvider,
        config: Config,
    ) -> None:
        self._db = db
        self._scheduler = scheduler
        self._limits = limits
        self._config = config

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _validate_start(
        self,
        text,
        duration_minutes,
        typing_profile,
        document_ref,
        test_wpm,
    ) -> tuple[TypingProfile, int | None]:
        if not isinstance(text, str) or not text:
            raise ValidationError("text must be a non-empty string")
        if len(text) > self._config.max_text_chars:
            raise ValidationError(
                f"text exceeds {self._config.max_text_chars} characters"
            )
        if (
            isinstance(duration_minutes, bool)
            or not isinstance(duration_minutes, int)
            or not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES
        ):
            raise ValidationError(
                f"durationMinutes must be an integer between "
                f"{MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES}"
            )
        if not isinstance(document_ref, str) or not document_ref.strip():
            raise ValidationError("documentRef is required")

        check = validate_engine_inputs(typing_profile, test_wpm)
        if not check.valid:
            raise ValidationError(check.error)
        profile = TypingProfile.parse(typing_profile)
        return profile, normalize_test_wpm(profile, test_wpm)

    async def _reclaim_if_stuck(
        self, tx: Transaction, owner_id: str, document_ref: str, now: datetime
    ) -> None:
        """Raise ConflictError if the document is held by a live job.

        A running or pending holder that has not made progress for
        stuck_job_seconds is force-failed and its lock released, in the
        caller's transaction. A paused holder keeps the document reserved.
        """
        lock = await tx.get_lock(owner_id, document_ref)
        if lock is None or lock.state is not LockState.RUNNING or not lock.current_job_id:
            return

        holder = await tx.get_job(lock.current_job_id)
        if holder is None or holder.status.is_terminal:
            return  # lock points at a finished job; acquire overwrites it

        stuck_before = now - timedelta(seconds=self._config.stuck_job_seconds)
        if holder.status not in ACTIVE_STATUSES or holder.updated_at >= stuck_before:
            raise ConflictError("Document already has a running job")

        await tx.transition_job(
            holder.id, ACTIVE_STATUSES, JobStatus.FAILED, now, error_code=STUCK_JOB
        )
        await tx.add_event(
            holder.id,
            EventType.FAILED,
            {"error": STUCK_JOB, "currentIndex": holder.current_index},
            now,
        )
        await tx.release_lock(owner_id, document_ref, holder.id, now)
        await tx.cancel_job_timers(holder.id)
        log.info("Reclaimed stuck job %s on document %s", holder.id, document_ref)

    async def start(
        self,
        owner_id: str,
        text: str,
        duration_minutes: int,
        typing_profile: str,
        document_ref: str,
        test_wpm: int | None = None,
        tier: str | PlanTier | None = None,
        now: datetime | None = None,
    ) -> Job:
        """Create a job, lock its document and start its loop."""
        now = now or utcnow()
        profile, wpm = self._validate_start(
            text, duration_minutes, typing_profile, document_ref, test_wpm
        )

        limits = await self._limits.limits_for(tier, now)
        if not limits.allows_profile(profile):
            raise ForbiddenError(
                f"Typing profile '{profile.value}' is not available on your plan"
            )
        if limits.max_duration_minutes is not None and duration_minutes > limits.max_duration_minutes:
            raise ForbiddenError(
                f"durationMinutes exceeds your plan limit of {limits.max_duration_minutes}"
            )

        job_id = str(uuid.uuid4())
        async with self._db.transaction() as tx:
            await self._reclaim_if_stuck(tx, owner_id, document_ref, now)

            if await tx.count_active_jobs(owner_id) > 0:
                raise ConflictError("You already have a running job")

            if limits.max_jobs_per_day is not None:
                midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
                if await tx.count_jobs_since(owner_id, midnight) >= limits.max_jobs_per_day:
                    raise QuotaExceededError("Daily job limit reached")

            await tx.insert_job(
                job_id=job_id,
                owner_id=owner_id,
                document_ref=document_ref,
                full_text=text,
                duration_minutes=duration_minutes,
                typing_profile=profile.value,
                target_wpm=wpm,
                status=JobStatus.PENDING,
                throttle_delay_ms=self._config.default_throttle_ms,
                now=now,
                expires_at=now + timedelta(days=self._config.job_ttl_days),
            )
            await tx.acquire_lock(owner_id, document_ref, job_id, now)
            details = {
                "durationMinutes": duration_minutes,
                "typingProfile": profile.value,
                "totalChars": len(text),
            }
            if wpm is not None:
                details["testWPM"] = wpm
            await tx.add_event(job_id, EventType.STARTED, details, now)
            await tx.transition_job(job_id, {JobStatus.PENDING}, JobStatus.RUNNING, now)

        await self._scheduler.kick(job_id, START)
        log.info(
            "Started job %s for %s: %d chars, %d min, %s",
            job_id, owner_id, len(text), duration_minutes, profile.value,
        )
        return await self._db.get_job(job_id)

    # ------------------------------------------------------------------
    # Pause / resume / stop
    # ------------------------------------------------------------------

    async def _owned_job(self, tx: Transaction, owner_id: str, job_id: str) -> Job:
        job = await tx.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.owner_id != owner_id:
            raise ForbiddenError("Unauthorized")
        return job

    async def pause(self, owner_id: str, job_id: str, now: datetime | None = None) -> Job:
        """running -> paused. The document stays locked."""
        now = now or utcnow()
        async with self._db.transaction() as tx:
            job = await self._owned_job(tx, owner_id, job_id)
            if job.status is not JobStatus.RUNNING:
                raise InvalidStateError(f"Job is not running (status: {job.status.value})")
            await tx.transition_job(job_id, {JobStatus.RUNNING}, JobStatus.PAUSED, now)
            await tx.add_event(
                job_id, EventType.PAUSED, {"currentIndex": job.current_index}, now
            )
            await tx.cancel_job_timers(job_id)
        log.info("Paused job %s at index %d", job_id, job.current_index)
        return await self._db.get_job(job_id)

    async def resume(
        self,
        owner_id: str,
        job_id: str,
        tier: str | PlanTier | None = None,
        now: datetime | None = None,
    ) -> Job:
        """paused -> running, restarting the loop."""
        now = now or utcnow()
        limits = await self._limits.limits_for(tier, now)
        async with self._db.transaction() as tx:
            job = await self._owned_job(tx, owner_id, job_id)
            if job.status is not JobStatus.PAUSED:
                raise InvalidStateError(f"Job is not paused (status: {job.status.value})")
            if not limits.allows_profile(job.typing_profile):
                raise ForbiddenError(
                    f"Typing profile '{job.typing_profile.value}' is not available on your plan"
                )
            if await tx.count_active_jobs(owner_id, exclude_job_id=job_id) > 0:
                raise ConflictError("You already have a running job")

            lock = await tx.get_lock(job.owner_id, job.document_ref)
            if (
                lock is not None
                and lock.state is LockState.RUNNING
                and lock.current_job_id not in (None, job_id)
            ):
                raise ConflictError("Document already has a running job")
            await tx.acquire_lock(job.owner_id, job.document_ref, job_id, now)

            await tx.transition_job(job_id, {JobStatus.PAUSED}, JobStatus.RUNNING, now)
            await tx.add_event(
                job_id, EventType.RESUMED, {"currentIndex": job.current_index}, now
            )

        await self._scheduler.kick(job_id, BATCH)
        log.info("Resumed job %s at index %d", job_id, job.current_index)
        return await self._db.get_job(job_id)

    async def stop(self, owner_id: str, job_id: str, now: datetime | None = None) -> Job:
        """Terminal stop. Releases the document lock."""
        now = now or utcnow()
        async with self._db.transaction() as tx:
            job = await self._owned_job(tx, owner_id, job_id)
            if job.status.is_terminal:
                raise InvalidStateError(f"Job is already {job.status.value}")
            if job.status not in STOPPABLE_STATUSES:
                raise InvalidStateError(f"Job cannot be stopped (status: {job.status.value})")
            await tx.transition_job(job_id, STOPPABLE_STATUSES, JobStatus.STOPPED, now)
            await tx.add_event(
                job_id, EventType.STOPPED, {"currentIndex": job.current_index}, now
            )
            await tx.release_lock(job.owner_id, job.document_ref, job_id, now)
            await tx.cancel_job_timers(job_id)
        log.info("Stopped job %s at index %d", job_id, job.current_index)
        return await self._db.get_job(job_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _get_owned(self, owner_id: str, job_id: str) -> Job:
        job = await self._db.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.owner_id != owner_id:
            raise ForbiddenError("Unauthorized")
        return job

    async def progress(self, owner_id: str, job_id: str) -> dict:
        job = await self._get_owned(owner_id, job_id)
        return job.progress()

    async def get_job_detail(self, owner_id: str, job_id: str) -> dict:
        """Progress plus the most recent events."""
        job = await self._get_owned(owner_id, job_id)
        events = await self._db.get_events(job_id, limit=EVENTS_LIMIT)
        return {**job.progress(), "events": [e.to_dict() for e in events]}

    async def list_jobs(
        self, owner_id: str, tier: str | PlanTier | None = None
    ) -> list[dict]:
        """Most recent jobs, capped by the plan's history length."""
        limits = await self._limits.limits_for(tier)
        limit = LIST_LIMIT
        if limits.max_job_history is not None:
            limit = min(limit, limits.max_job_history)
        jobs = await self._db.get_jobs_for_owner(owner_id, limit=limit)
        return [job.progress() for job in jobs]

    async def job_stats(
        self, owner_id: str, range_: str = "30d", now: datetime | None = None
    ) -> dict:
        if range_ not in STATS_RANGES:
            raise ValidationError(
                f"range must be one of {', '.join(STATS_RANGES)} (got {range_!r})"
            )
        now = now or utcnow()
        days = STATS_RANGES[range_]
        since = now - timedelta(days=days) if days is not None else None
        jobs = await self._db.get_jobs_for_owner(owner_id, limit=None, since=since)

        total_chars = sum(job.current_index for job in jobs)
        total_minutes = sum(job.duration_minutes for job in jobs)
        avg_wpm = 0
        if total_minutes > 0 and total_chars > 0:
            avg_wpm = round((total_chars / 5) / (total_minutes / len(jobs)))

        by_day = Counter(job.created_at.date().isoformat() for job in jobs)
        return {
            "totalJobs": len(jobs),
            "totalChars": total_chars,
            "totalTime": total_minutes,
            "avgWPM": avg_wpm,
            "completedJobs": sum(1 for j in jobs if j.status is JobStatus.COMPLETED),
            "failedJobs": sum(1 for j in jobs if j.status is JobStatus.FAILED),
            "jobsByProfile": dict(Counter(job.typing_profile.value for job in jobs)),
            "jobsByDay": [
                {"date": day, "count": count} for day, count in sorted(by_day.items())
            ],
        }
