"""Tests for the durable scheduling loop, including end-to-end job runs."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from typist.db import Database
from typist.dispatcher import BatchDispatcher
from typist.lifecycle import JobManager
from typist.models import EventType, JobStatus, LockState, from_iso
from typist.scheduler import SchedulingLoop
from typist.tiers import LimitsProvider
from typist.timers import BATCH, START, TimerQueue
from typist.writer import RateLimited, WriteOk

TEXT = "abcdefghij" * 10


class _RecordingWriter:
    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[tuple[str, str, int]] = []

    async def write(self, document_ref: str, text: str, at_index: int):
        self.calls.append((document_ref, text, at_index))
        return self.results.pop(0) if self.results else WriteOk()

    @property
    def written(self) -> str:
        return "".join(text for _, text, _ in self.calls)


@pytest_asyncio.fixture
async def engine(db: Database, config):
    """Fully wired engine with a recording writer and a stopped timer loop."""
    writer = _RecordingWriter()
    timers = TimerQueue(db, tick_seconds=config.timer_tick_seconds)
    dispatcher = BatchDispatcher(db, writer, config, rng=random.Random(3))
    scheduler = SchedulingLoop(db, dispatcher, timers, config)
    timers.set_callback(scheduler.handle_timer)
    jobs = JobManager(db, scheduler, LimitsProvider(db, "UNLIMITED"), config)
    yield {
        "db": db,
        "writer": writer,
        "timers": timers,
        "scheduler": scheduler,
        "jobs": jobs,
    }
    await timers.stop()


async def _drive(scheduler: SchedulingLoop, job_id: str, max_steps: int = 500) -> int:
    """Run steps back to back (ignoring pacing) until the loop halts."""
    steps = 0
    while steps < max_steps:
        result = await scheduler.run_step(job_id)
        steps += 1
        if result is None or not result.should_continue:
            break
    return steps


# ------------------------------------------------------------------
# End to end
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_job_runs_to_completion(engine):
    jobs, db, scheduler = engine["jobs"], engine["db"], engine["scheduler"]

    job = await jobs.start("owner-a", TEXT, 10, "steady", "doc-1")
    await _drive(scheduler, job.id)

    final = await db.get_job(job.id)
    assert final.status is JobStatus.COMPLETED
    assert final.current_index == 100
    lock = await db.get_lock("owner-a", "doc-1")
    assert lock.state is LockState.IDLE
    assert lock.current_job_id is None
    assert await db.count_events(job.id, EventType.STARTED) == 1
    assert await db.count_events(job.id, EventType.FAILED) == 0
    assert engine["writer"].written == TEXT
    assert not await engine["timers"].has_pending(job.id)


@pytest.mark.asyncio
async def test_pause_and_resume_lose_nothing(engine):
    jobs, db, scheduler = engine["jobs"], engine["db"], engine["scheduler"]

    job = await jobs.start("owner-a", TEXT, 10, "steady", "doc-1")
    for _ in range(5):
        await scheduler.run_step(job.id)

    paused = await jobs.pause("owner-a", job.id)
    index_at_pause = paused.current_index
    assert index_at_pause > 0
    assert not await engine["timers"].has_pending(job.id)

    # A continuation delivered after the pause is a no-op.
    assert await scheduler.run_step(job.id) is None
    assert (await db.get_job(job.id)).current_index == index_at_pause

    resumed = await jobs.resume("owner-a", job.id)
    assert resumed.current_index == index_at_pause
    assert await engine["timers"].has_pending(job.id)

    await _drive(scheduler, job.id)
    final = await db.get_job(job.id)
    assert final.status is JobStatus.COMPLETED
    assert engine["writer"].written == TEXT


@pytest.mark.asyncio
async def test_stop_halts_loop(engine):
    jobs, db, scheduler = engine["jobs"], engine["db"], engine["scheduler"]

    job = await jobs.start("owner-a", TEXT, 10, "steady", "doc-1")
    await scheduler.run_step(job.id)
    await jobs.stop("owner-a", job.id)

    calls_before = len(engine["writer"].calls)
    assert await scheduler.run_step(job.id) is None
    assert len(engine["writer"].calls) == calls_before
    assert (await db.get_job(job.id)).status is JobStatus.STOPPED


# ------------------------------------------------------------------
# Continuations
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_timer_drives_first_batch(engine):
    jobs, db, timers = engine["jobs"], engine["db"], engine["timers"]

    job = await jobs.start("owner-a", TEXT, 10, "steady", "doc-1")
    pending = await db.get_pending_timers(job.id)
    assert [t["timer_type"] for t in pending] == [START]

    assert await timers.tick() == 1

    assert (await db.get_job(job.id)).current_index > 0
    pending = await db.get_pending_timers(job.id)
    assert [t["timer_type"] for t in pending] == [BATCH]


@pytest.mark.asyncio
async def test_each_step_leaves_one_continuation(engine):
    jobs, db, scheduler = engine["jobs"], engine["db"], engine["scheduler"]

    job = await jobs.start("owner-a", TEXT, 10, "steady", "doc-1")
    for _ in range(3):
        await scheduler.run_step(job.id)
        batch_timers = [
            t for t in await db.get_pending_timers(job.id) if t["timer_type"] == BATCH
        ]
        assert len(batch_timers) == 1


@pytest.mark.asyncio
async def test_rate_limit_reschedules_after_throttle(engine):
    jobs, db, scheduler = engine["jobs"], engine["db"], engine["scheduler"]
    engine["writer"].results = [RateLimited(retry_after_ms=4000)]

    job = await jobs.start("owner-a", TEXT, 10, "steady", "doc-1")
    before = datetime.now(timezone.utc)
    result = await scheduler.run_step(job.id)

    assert result.error == "RATE_LIMIT"
    assert (await db.get_job(job.id)).current_index == 0
    batch = [t for t in await db.get_pending_timers(job.id) if t["timer_type"] == BATCH]
    assert from_iso(batch[0]["fire_at"]) >= before + timedelta(seconds=3.9)


@pytest.mark.asyncio
async def test_unknown_timer_type_is_ignored(engine):
    writer = engine["writer"]
    await engine["scheduler"].handle_timer("mystery", "job-x", None)
    assert writer.calls == []


# ------------------------------------------------------------------
# Crash recovery
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_recover_restarts_orphaned_running_jobs(engine):
    jobs, db, scheduler = engine["jobs"], engine["db"], engine["scheduler"]

    job = await jobs.start("owner-a", TEXT, 10, "steady", "doc-1")
    # Simulate a crash that lost the continuation.
    async with db.transaction() as tx:
        await tx.cancel_job_timers(job.id)

    assert await scheduler.recover() == 1
    assert await engine["timers"].has_pending(job.id)
    # Already has a continuation: nothing to do.
    assert await scheduler.recover() == 0


@pytest.mark.asyncio
async def test_recover_ignores_paused_jobs(engine):
    jobs, scheduler = engine["jobs"], engine["scheduler"]

    job = await jobs.start("owner-a", TEXT, 10, "steady", "doc-1")
    await jobs.pause("owner-a", job.id)

    assert await scheduler.recover() == 0
