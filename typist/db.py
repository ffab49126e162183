"""
SQLite job store for the typing engine.

Holds jobs, document locks, the job event audit log, the durable timer
queue and a small key/value settings table. A single aiosqlite connection
is shared by every coroutine, so all writes go through transaction(),
which serializes them behind an asyncio lock and wraps them in
BEGIN IMMEDIATE ... COMMIT.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

import aiosqlite

from typist.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    DocumentLock,
    EventType,
    Job,
    JobEvent,
    JobStatus,
    LockState,
    can_transition,
    to_iso,
    utcnow,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id                  TEXT PRIMARY KEY,
    owner_id            TEXT NOT NULL,
    document_ref        TEXT NOT NULL,
    full_text           TEXT NOT NULL,
    total_chars         INTEGER NOT NULL,
    current_index       INTEGER NOT NULL DEFAULT 0,
    duration_minutes    INTEGER NOT NULL,
    typing_profile      TEXT NOT NULL,
    target_wpm          INTEGER,
    status              TEXT NOT NULL,
    throttle_delay_ms   INTEGER NOT NULL,
    dispatch_failures   INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL,
    completed_at        TEXT,
    expires_at          TEXT NOT NULL,
    error_code          TEXT,
    CHECK (current_index >= 0 AND current_index <= total_chars)
);

CREATE TABLE IF NOT EXISTS documents (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id        TEXT NOT NULL,
    document_ref    TEXT NOT NULL,
    state           TEXT NOT NULL DEFAULT 'idle',
    current_job_id  TEXT,
    updated_at      TEXT NOT NULL,
    UNIQUE (owner_id, document_ref)
);

CREATE TABLE IF NOT EXISTS job_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id      TEXT NOT NULL,
    type        TEXT NOT NULL,
    details     TEXT,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS timers (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    timer_type  TEXT NOT NULL,
    target_id   TEXT NOT NULL,
    fire_at     TEXT NOT NULL,
    payload     TEXT,
    attempts    INTEGER NOT NULL DEFAULT 0,
    fired       INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS settings (
    key         TEXT PRIMARY KEY,
    value       TEXT,
    updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);
CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events(job_id);
CREATE INDEX IF NOT EXISTS idx_timers_fire ON timers(fire_at) WHERE fired = 0;
CREATE INDEX IF NOT EXISTS idx_timers_target ON timers(target_id) WHERE fired = 0;
"""

# Columns update_job() may touch. Guards the f-string SQL below. Status only
# changes through transition_job().
_ALLOWED_JOB_COLUMNS = frozenset({
    "current_index",
    "throttle_delay_ms",
    "dispatch_failures",
    "completed_at",
    "error_code",
    "full_text",
})

_TERMINAL_VALUES = tuple(s.value for s in TERMINAL_STATUSES)
_ACTIVE_VALUES = tuple(s.value for s in ACTIVE_STATUSES)


def _placeholders(values: tuple) -> str:
    return ", ".join("?" for _ in values)


def _sql_value(value):
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, (JobStatus, EventType, LockState)):
        return value.value
    return value


class Transaction:
    """Statement-level operations, valid only inside Database.transaction()."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def execute(self, sql: str, params=()) -> aiosqlite.Cursor:
        return await self._conn.execute(sql, params)

    # -- Jobs ----------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        cursor = await self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return Job.from_row(dict(row)) if row else None

    async def insert_job(
        self,
        *,
        job_id: str,
        owner_id: str,
        document_ref: str,
        full_text: str,
        duration_minutes: int,
        typing_profile: str,
        target_wpm: int | None,
        status: JobStatus,
        throttle_delay_ms: int,
        now: datetime,
        expires_at: datetime,
    ) -> None:
        await self._conn.execute(
            """INSERT INTO jobs
               (id, owner_id, document_ref, full_text, total_chars,
                current_index, duration_minutes, typing_profile, target_wpm,
                status, throttle_delay_ms, dispatch_failures,
                created_at, updated_at, expires_at)
               VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, 0, ?, ?, ?)""",
            (
                job_id, owner_id, document_ref, full_text, len(full_text),
                duration_minutes, typing_profile, target_wpm, status.value,
                throttle_delay_ms, to_iso(now), to_iso(now), to_iso(expires_at),
            ),
        )

    async def update_job(self, job_id: str, now: datetime, **fields) -> None:
        """Update arbitrary allowed columns plus updated_at."""
        bad = set(fields) - _ALLOWED_JOB_COLUMNS
        if bad:
            raise ValueError(f"Disallowed job columns: {', '.join(sorted(bad))}")
        sets = ["updated_at = ?"]
        params: list = [to_iso(now)]
        for key, value in fields.items():
            sets.append(f"{key} = ?")
            params.append(_sql_value(value))
        params.append(job_id)
        await self._conn.execute(
            f"UPDATE jobs SET {', '.join(sets)} WHERE id = ?", params
        )

    async def transition_job(
        self,
        job_id: str,
        expected: frozenset[JobStatus] | set[JobStatus],
        target: JobStatus,
        now: datetime,
        **fields,
    ) -> bool:
        """Compare-and-set the status. Returns False if the job moved on.

        Every status in ``expected`` must be allowed to move to ``target``
        by the job state machine; an illegal edge raises ValueError.
        """
        bad = set(fields) - _ALLOWED_JOB_COLUMNS
        if bad:
            raise ValueError(f"Disallowed job columns: {', '.join(sorted(bad))}")
        illegal = sorted(s.value for s in expected if not can_transition(s, target))
        if illegal:
            raise ValueError(
                f"Illegal transition to {target.value} from {', '.join(illegal)}"
            )
        expected_values = tuple(s.value for s in expected)
        sets = ["status = ?", "updated_at = ?"]
        params: list = [target.value, to_iso(now)]
        for key, value in fields.items():
            sets.append(f"{key} = ?")
            params.append(_sql_value(value))
        params.append(job_id)
        params.extend(expected_values)
        cursor = await self._conn.execute(
            f"UPDATE jobs SET {', '.join(sets)} "
            f"WHERE id = ? AND status IN ({_placeholders(expected_values)})",
            params,
        )
        return cursor.rowcount == 1

    async def advance_job(
        self, job_id: str, from_index: int, to_index: int, now: datetime, **fields
    ) -> bool:
        """Move current_index forward only if it still equals from_index.

        A redelivered step that already advanced the index is a no-op.
        """
        bad = set(fields) - _ALLOWED_JOB_COLUMNS
        if bad:
            raise ValueError(f"Disallowed job columns: {', '.join(sorted(bad))}")
        sets = ["current_index = ?", "updated_at = ?"]
        params: list = [to_index, to_iso(now)]
        for key, value in fields.items():
            sets.append(f"{key} = ?")
            params.append(_sql_value(value))
        params.extend([job_id, from_index])
        cursor = await self._conn.execute(
            f"UPDATE jobs SET {', '.join(sets)} WHERE id = ? AND current_index = ?",
            params,
        )
        return cursor.rowcount == 1

    async def count_active_jobs(
        self, owner_id: str, exclude_job_id: str | None = None
    ) -> int:
        sql = (
            f"SELECT COUNT(*) FROM jobs WHERE owner_id = ? "
            f"AND status IN ({_placeholders(_ACTIVE_VALUES)})"
        )
        params: list = [owner_id, *_ACTIVE_VALUES]
        if exclude_job_id is not None:
            sql += " AND id != ?"
            params.append(exclude_job_id)
        cursor = await self._conn.execute(sql, params)
        return (await cursor.fetchone())[0]

    async def count_jobs_since(self, owner_id: str, since: datetime) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM jobs WHERE owner_id = ? AND created_at >= ?",
            (owner_id, to_iso(since)),
        )
        return (await cursor.fetchone())[0]

    # -- Events --------------------------------------------------------------

    async def add_event(
        self,
        job_id: str,
        event_type: EventType,
        details: dict | None,
        now: datetime,
    ) -> None:
        await self._conn.execute(
            "INSERT INTO job_events (job_id, type, details, created_at) VALUES (?, ?, ?, ?)",
            (
                job_id,
                event_type.value,
                json.dumps(details) if details is not None else None,
                to_iso(now),
            ),
        )

    # -- Document locks ------------------------------------------------------

    async def get_lock(self, owner_id: str, document_ref: str) -> DocumentLock | None:
        cursor = await self._conn.execute(
            "SELECT * FROM documents WHERE owner_id = ? AND document_ref = ?",
            (owner_id, document_ref),
        )
        row = await cursor.fetchone()
        return DocumentLock.from_row(dict(row)) if row else None

    async def acquire_lock(
        self, owner_id: str, document_ref: str, job_id: str, now: datetime
    ) -> None:
        """Point the document's lock row at job_id, creating the row if needed."""
        await self._conn.execute(
            """INSERT INTO documents (owner_id, document_ref, state, current_job_id, updated_at)
               VALUES (?, ?, 'running', ?, ?)
               ON CONFLICT (owner_id, document_ref) DO UPDATE SET
                   state = 'running',
                   current_job_id = excluded.current_job_id,
                   updated_at = excluded.updated_at""",
            (owner_id, document_ref, job_id, to_iso(now)),
        )

    async def release_lock(
        self, owner_id: str, document_ref: str, job_id: str, now: datetime
    ) -> bool:
        """Release only if the lock still belongs to job_id."""
        cursor = await self._conn.execute(
            """UPDATE documents SET state = 'idle', current_job_id = NULL, updated_at = ?
               WHERE owner_id = ? AND document_ref = ? AND current_job_id = ?""",
            (to_iso(now), owner_id, document_ref, job_id),
        )
        return cursor.rowcount == 1

    # -- Timers --------------------------------------------------------------

    async def cancel_job_timers(self, target_id: str) -> int:
        """Drop every unfired timer for a target, whatever its type."""
        cursor = await self._conn.execute(
            "DELETE FROM timers WHERE target_id = ? AND fired = 0", (target_id,)
        )
        return cursor.rowcount


class Database:
    """Async SQLite wrapper for the job store."""

    def __init__(self, db_path: str = "typist.db") -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open connection, enable WAL mode, create tables."""
        # isolation_level=None: transactions are opened explicitly below.
        self._db = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)

    async def close(self) -> None:
        """Close the connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Serialized BEGIN IMMEDIATE transaction. Not re-entrant."""
        async with self._write_lock:
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(self._db)
            except BaseException:
                await self._db.execute("ROLLBACK")
                raise
            else:
                await self._db.execute("COMMIT")

    async def _fetchall(self, sql: str, params=()) -> list[dict]:
        cursor = await self._db.execute(sql, params)
        return [dict(r) for r in await cursor.fetchall()]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        """Fetch a single job by id."""
        cursor = await self._db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return Job.from_row(dict(row)) if row else None

    async def get_jobs_by_status(self, status: JobStatus) -> list[Job]:
        """Return all jobs matching a given status."""
        rows = await self._fetchall(
            "SELECT * FROM jobs WHERE status = ? ORDER BY created_at", (status.value,)
        )
        return [Job.from_row(r) for r in rows]

    async def get_jobs_for_owner(
        self,
        owner_id: str,
        limit: int = 50,
        since: datetime | None = None,
    ) -> list[Job]:
        """Most recent jobs for an owner, newest first."""
        sql = "SELECT * FROM jobs WHERE owner_id = ?"
        params: list = [owner_id]
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(to_iso(since))
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [Job.from_row(r) for r in await self._fetchall(sql, params)]

    async def update_job(self, job_id: str, now: datetime | None = None, **fields) -> None:
        """Update allowed job columns in their own transaction."""
        async with self.transaction() as tx:
            await tx.update_job(job_id, now or utcnow(), **fields)

    async def get_lock(self, owner_id: str, document_ref: str) -> DocumentLock | None:
        cursor = await self._db.execute(
            "SELECT * FROM documents WHERE owner_id = ? AND document_ref = ?",
            (owner_id, document_ref),
        )
        row = await cursor.fetchone()
        return DocumentLock.from_row(dict(row)) if row else None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def add_event(
        self,
        job_id: str,
        event_type: EventType,
        details: dict | None = None,
        now: datetime | None = None,
    ) -> None:
        """Append an audit event in its own transaction."""
        async with self.transaction() as tx:
            await tx.add_event(job_id, event_type, details, now or utcnow())

    async def get_events(self, job_id: str, limit: int = 50) -> list[JobEvent]:
        """Return recent events for a job, newest first."""
        rows = await self._fetchall(
            "SELECT * FROM job_events WHERE job_id = ? ORDER BY id DESC LIMIT ?",
            (job_id, limit),
        )
        return [JobEvent.from_row(r) for r in rows]

    async def count_events(self, job_id: str, event_type: EventType) -> int:
        cursor = await self._db.execute(
            "SELECT COUNT(*) FROM job_events WHERE job_id = ? AND type = ?",
            (job_id, event_type.value),
        )
        return (await cursor.fetchone())[0]

    # ------------------------------------------------------------------
    # Lifecycle sweep
    # ------------------------------------------------------------------

    async def _finish_jobs(
        self,
        tx: Transaction,
        rows: list[dict],
        target: JobStatus,
        event_type: EventType,
        now: datetime,
        error_code: str | None = None,
    ) -> list[Job]:
        finished = []
        for row in rows:
            job = Job.from_row(row)
            fields = {"error_code": error_code} if error_code else {}
            moved = await tx.transition_job(
                job.id, {job.status}, target, now, **fields
            )
            if not moved:
                continue
            details = {"currentIndex": job.current_index, "from": job.status.value}
            if error_code:
                details["error"] = error_code
            await tx.add_event(job.id, event_type, details, now)
            await tx.release_lock(job.owner_id, job.document_ref, job.id, now)
            await tx.cancel_job_timers(job.id)
            finished.append(job)
        return finished

    async def fail_stale_jobs(
        self, created_before: datetime, error_code: str, now: datetime
    ) -> list[Job]:
        """Fail running/pending jobs created before the cutoff."""
        async with self.transaction() as tx:
            cursor = await tx.execute(
                f"SELECT * FROM jobs WHERE status IN ({_placeholders(_ACTIVE_VALUES)}) "
                "AND created_at < ?",
                (*_ACTIVE_VALUES, to_iso(created_before)),
            )
            rows = [dict(r) for r in await cursor.fetchall()]
            return await self._finish_jobs(
                tx, rows, JobStatus.FAILED, EventType.FAILED, now, error_code
            )

    async def expire_jobs(self, now: datetime) -> list[Job]:
        """Expire every non-terminal job whose expires_at has passed."""
        async with self.transaction() as tx:
            cursor = await tx.execute(
                f"SELECT * FROM jobs WHERE status NOT IN ({_placeholders(_TERMINAL_VALUES)}) "
                "AND expires_at < ?",
                (*_TERMINAL_VALUES, to_iso(now)),
            )
            rows = [dict(r) for r in await cursor.fetchall()]
            return await self._finish_jobs(
                tx, rows, JobStatus.EXPIRED, EventType.EXPIRED, now
            )

    async def scrub_job_text(self, created_before: datetime) -> int:
        """Clear stored text of old jobs. Metadata stays. Returns count."""
        async with self.transaction() as tx:
            cursor = await tx.execute(
                "UPDATE jobs SET full_text = '' WHERE created_at < ? AND full_text != ''",
                (to_iso(created_before),),
            )
            return cursor.rowcount

    async def delete_jobs_before(self, created_before: datetime, now: datetime) -> int:
        """Delete old jobs with their events and timers. Returns jobs deleted."""
        cutoff = to_iso(created_before)
        async with self.transaction() as tx:
            await tx.execute(
                """UPDATE documents SET state = 'idle', current_job_id = NULL, updated_at = ?
                   WHERE current_job_id IN (SELECT id FROM jobs WHERE created_at < ?)""",
                (to_iso(now), cutoff),
            )
            await tx.execute(
                "DELETE FROM job_events WHERE job_id IN (SELECT id FROM jobs WHERE created_at < ?)",
                (cutoff,),
            )
            await tx.execute(
                "DELETE FROM timers WHERE target_id IN (SELECT id FROM jobs WHERE created_at < ?)",
                (cutoff,),
            )
            cursor = await tx.execute("DELETE FROM jobs WHERE created_at < ?", (cutoff,))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def add_timer(
        self,
        timer_type: str,
        target_id: str,
        fire_at: str,
        payload: str | None = None,
        replace: bool = False,
    ) -> int:
        """Insert a timer. Returns the new timer id.

        With replace=True, unfired timers of the same type+target are
        dropped first in the same transaction.
        """
        async with self.transaction() as tx:
            if replace:
                await tx.execute(
                    "DELETE FROM timers WHERE timer_type = ? AND target_id = ? AND fired = 0",
                    (timer_type, target_id),
                )
            cursor = await tx.execute(
                """INSERT INTO timers (timer_type, target_id, fire_at, payload)
                   VALUES (?, ?, ?, ?)""",
                (timer_type, target_id, fire_at, payload),
            )
            return cursor.lastrowid

    async def get_due_timers(self, now: str) -> list[dict]:
        """Return unfired timers where fire_at <= now, oldest first."""
        return await self._fetchall(
            "SELECT * FROM timers WHERE fired = 0 AND fire_at <= ? ORDER BY fire_at, id",
            (now,),
        )

    async def get_pending_timers(self, target_id: str) -> list[dict]:
        return await self._fetchall(
            "SELECT * FROM timers WHERE fired = 0 AND target_id = ? ORDER BY fire_at",
            (target_id,),
        )

    async def mark_timer_fired(self, timer_id: int) -> None:
        """Mark a timer as fired."""
        async with self.transaction() as tx:
            await tx.execute("UPDATE timers SET fired = 1 WHERE id = ?", (timer_id,))

    async def retry_timer(self, timer_id: int, fire_at: str) -> None:
        """Push an unfired timer back and count the failed attempt."""
        async with self.transaction() as tx:
            await tx.execute(
                "UPDATE timers SET fire_at = ?, attempts = attempts + 1 WHERE id = ? AND fired = 0",
                (fire_at, timer_id),
            )

    async def delete_fired_timers(self) -> int:
        """Delete fired timers. Return count deleted."""
        async with self.transaction() as tx:
            cursor = await tx.execute("DELETE FROM timers WHERE fired = 1")
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> str | None:
        cursor = await self._db.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row[0] if row else None

    async def set_setting(self, key: str, value: str | None) -> None:
        async with self.transaction() as tx:
            await tx.execute(
                """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT (key) DO UPDATE SET value = excluded.value,
                       updated_at = excluded.updated_at""",
                (key, value, to_iso(utcnow())),
            )
