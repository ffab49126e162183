"""Periodic lifecycle sweep.

Reconciles work no loop will ever finish: jobs running past the maximum
runtime are failed, jobs past their expiry are expired, old job text is
scrubbed and very old jobs are deleted. Every pass only matches rows that
still need the action, so running the sweep twice in a row is a no-op the
second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from typist.config import Config
from typist.db import Database
from typist.models import MAX_RUNTIME_EXCEEDED, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    stale: int = 0
    expired: int = 0
    scrubbed: int = 0
    deleted: int = 0


class CleanupSweep:
    def __init__(self, db: Database, config: Config) -> None:
        self._db = db
        self._config = config

    async def run(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()

        stale = await self._db.fail_stale_jobs(
            created_before=now - timedelta(hours=self._config.max_runtime_hours),
            error_code=MAX_RUNTIME_EXCEEDED,
            now=now,
        )
        for job in stale:
            log.info("Failed job %s: exceeded %dh runtime", job.id, self._config.max_runtime_hours)

        expired = await self._db.expire_jobs(now)
        for job in expired:
            log.info("Expired job %s (was %s)", job.id, job.status.value)

        scrubbed = await self._db.scrub_job_text(
            now - timedelta(days=self._config.scrub_after_days)
        )
        deleted = await self._db.delete_jobs_before(
            now - timedelta(days=self._config.delete_after_days), now
        )
        purged = await self._db.delete_fired_timers()

        report = SweepReport(
            stale=len(stale),
            expired=len(expired),
            scrubbed=scrubbed,
            deleted=deleted,
        )
        log.info(
            "Cleanup sweep: %d stale, %d expired, %d scrubbed, %d deleted, %d timers purged",
            report.stale, report.expired, report.scrubbed, report.deleted, purged,
        )
        return report
