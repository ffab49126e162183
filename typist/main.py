"""Typist engine: main entry point.

Wires all modules together, recovers interrupted jobs, starts the timer
loop, the control server and the cleanup sweep. Handles graceful
shutdown on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from typist.cleanup import CleanupSweep
from typist.config import Config
from typist.db import Database
from typist.dispatcher import BatchDispatcher
from typist.lifecycle import JobManager
from typist.scheduler import SchedulingLoop
from typist.server import ControlServer
from typist.tiers import LimitsProvider
from typist.timers import TimerQueue
from typist.writer import HttpDocumentWriter

log = logging.getLogger(__name__)


async def _cleanup_loop(
    sweep: CleanupSweep,
    shutdown: asyncio.Event,
    interval_seconds: int = 86400,
) -> None:
    """Run the lifecycle sweep periodically."""
    # Wait 60s after startup
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=60)
        return
    except asyncio.TimeoutError:
        pass

    while not shutdown.is_set():
        try:
            await sweep.run()
        except Exception:
            log.exception("[cleanup] Error")

        try:
            await asyncio.wait_for(shutdown.wait(), timeout=interval_seconds)
            return
        except asyncio.TimeoutError:
            pass


async def run(config: Config) -> None:
    """Start all services and run until shutdown signal."""

    # -- Database --
    db = Database(config.db_path)
    await db.connect()

    # -- Document writer --
    writer = HttpDocumentWriter(
        config.docs_api_base_url,
        config.docs_access_token,
        insert_offset=config.docs_insert_offset,
    )
    await writer.start()

    # -- Module graph --
    timers = TimerQueue(db, tick_seconds=config.timer_tick_seconds)
    dispatcher = BatchDispatcher(db, writer, config)
    scheduler = SchedulingLoop(db, dispatcher, timers, config)
    limits = LimitsProvider(
        db,
        default_tier=config.default_plan_tier,
        ttl_seconds=config.tier_overrides_ttl_seconds,
    )
    jobs = JobManager(db, scheduler, limits, config)
    sweep = CleanupSweep(db, config)

    timers.set_callback(scheduler.handle_timer)
    await scheduler.recover()

    # -- Control server --
    server = ControlServer(jobs, host=config.control_host, port=config.control_port)
    await server.start()

    # -- Shutdown signal handling --
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        log.info("Shutdown signal received")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    # -- Start background tasks --
    await timers.start()
    tasks = [
        asyncio.create_task(
            _cleanup_loop(sweep, shutdown, config.cleanup_interval_seconds),
            name="cleanup",
        ),
    ]

    log.info("Typist engine running (db: %s)", config.db_path)

    # -- Wait for shutdown --
    await shutdown.wait()
    log.info("Shutting down...")

    # -- Graceful shutdown --
    for t in tasks:
        t.cancel()
    for t in tasks:
        try:
            await t
        except asyncio.CancelledError:
            pass

    await timers.stop()
    await server.stop()
    await writer.close()
    await db.close()
    log.info("Shutdown complete")


def main() -> None:
    """Load config, configure logging, run the engine."""
    config = Config.load()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
