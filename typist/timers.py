"""Persistent timer queue backed by SQLite.

Each timer is a continuation record {timer_type, target_id, fire_at}.
Timers survive process restarts. The tick loop checks every
tick_seconds for due timers and runs each callback in its own task, so a
slow callback for one job never holds up another. A timer is marked
fired only after its callback returns, so a crash mid-callback redelivers
it (at-least-once). A callback that raises is retried with backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone, timedelta

from typist.db import Database
from typist.models import to_iso

log = logging.getLogger(__name__)

# Timer type constants
START = "start"
BATCH = "batch"

MAX_ATTEMPTS = 5
MAX_RETRY_SECONDS = 30.0


class TimerQueue:
    def __init__(self, db: Database, tick_seconds: float = 0.25):
        self._db = db
        self._tick_seconds = tick_seconds
        self._callback = None  # async callable(timer_type, target_id, payload)
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._inflight: dict[str, asyncio.Task] = {}  # by target_id

    def set_callback(self, callback) -> None:
        """Set the callback for fired timers.

        callback signature: async def handler(timer_type: str, target_id: str, payload: dict | None)
        """
        self._callback = callback

    async def schedule(
        self,
        timer_type: str,
        target_id: str,
        fire_at: datetime,
        payload: dict | None = None,
        replace: bool = False,
    ) -> int:
        """Schedule a timer. Returns the timer ID.

        fire_at must be timezone-aware (UTC).
        payload is optional JSON-serializable dict.
        replace=True drops any other unfired timer of the same type+target.
        """
        fire_at_str = to_iso(fire_at)
        payload_str = json.dumps(payload) if payload else None
        timer_id = await self._db.add_timer(
            timer_type, target_id, fire_at_str, payload_str, replace=replace
        )
        log.debug("Scheduled timer %d: %s for %s at %s", timer_id, timer_type, target_id, fire_at_str)
        return timer_id

    async def reschedule(
        self,
        timer_type: str,
        target_id: str,
        delay_seconds: float,
        payload: dict | None = None,
    ) -> int:
        """Replace any pending timer of this type+target with one due after delay."""
        fire_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        return await self.schedule(timer_type, target_id, fire_at, payload, replace=True)

    async def has_pending(self, target_id: str) -> bool:
        return bool(await self._db.get_pending_timers(target_id))

    async def tick(self) -> int:
        """Fire every due timer concurrently and wait for them.

        Returns count of timers fired. The run loop dispatches without
        waiting; tick() is the synchronous form used by tests.
        """
        tasks = await self._dispatch_due()
        if not tasks:
            return 0
        return sum(await asyncio.gather(*tasks))

    async def _dispatch_due(self) -> list[asyncio.Task]:
        """Start one task per due timer.

        A target with a callback still running is skipped until a later
        tick, so one job never runs two steps at once.
        """
        now = datetime.now(timezone.utc)
        due = await self._db.get_due_timers(to_iso(now))

        tasks = []
        for timer in due:
            if timer["target_id"] in self._inflight:
                continue
            task = asyncio.create_task(
                self._run_timer(timer), name=f"timer-{timer['id']}"
            )
            task.add_done_callback(_log_task_failure)
            self._inflight[timer["target_id"]] = task
            tasks.append(task)
        return tasks

    async def _run_timer(self, timer: dict) -> int:
        try:
            return await self._fire(timer)
        finally:
            self._inflight.pop(timer["target_id"], None)

    async def _fire(self, timer: dict) -> int:
        """Deliver one timer. Returns 1 if it was marked fired, 0 if retried."""
        payload = json.loads(timer["payload"]) if timer["payload"] else None
        if self._callback:
            try:
                await self._callback(timer["timer_type"], timer["target_id"], payload)
            except Exception:
                attempt = timer["attempts"] + 1
                log.exception(
                    "Timer callback failed: %s for %s (attempt %d)",
                    timer["timer_type"], timer["target_id"], attempt,
                )
                if attempt < MAX_ATTEMPTS:
                    retry_at = datetime.now(timezone.utc) + self._retry_delay(attempt)
                    await self._db.retry_timer(timer["id"], to_iso(retry_at))
                    return 0
                log.error(
                    "Giving up on %s timer for %s after %d attempts",
                    timer["timer_type"], timer["target_id"], MAX_ATTEMPTS,
                )

        # The callback may have replaced this timer (reschedule); marking a
        # deleted row is a no-op.
        await self._db.mark_timer_fired(timer["id"])
        return 1

    def _retry_delay(self, attempt: int) -> timedelta:
        return timedelta(seconds=min(MAX_RETRY_SECONDS, max(1.0, self._tick_seconds) * attempt))

    async def start(self) -> None:
        """Start the background tick loop."""
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        """Stop the background tick loop and wait for in-flight callbacks."""
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)

    async def _run_loop(self) -> None:
        """Background loop: dispatch due timers every N seconds."""
        while not self._stop_event.is_set():
            try:
                started = await self._dispatch_due()
                if started:
                    log.debug("Dispatched %d timer(s)", len(started))
            except Exception:
                log.exception("Timer tick error")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._tick_seconds,
                )
                break  # stop_event was set
            except asyncio.TimeoutError:
                pass  # normal: timeout means time to tick again


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        log.error("%s failed", task.get_name(), exc_info=task.exception())
