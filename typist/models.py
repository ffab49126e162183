"""Persisted record types for the typing engine.

Rows come out of SQLite as dicts; these dataclasses parse them into closed
enums so an unknown status or profile string fails loudly at the boundary
instead of leaking further into the engine.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from typist.profiles import TypingProfile


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class EventType(str, Enum):
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    DISPATCH_FAILED = "dispatch_failed"


class LockState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.STOPPED,
    JobStatus.FAILED,
    JobStatus.EXPIRED,
})

# Statuses that count toward the one-active-job-per-owner rule.
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})

# Allowed edges of the job state machine. A paused job keeps its document
# lock and can only resume, stop or expire; failure and completion happen
# to running jobs.
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({
        JobStatus.RUNNING,
        JobStatus.FAILED,
        JobStatus.EXPIRED,
    }),
    JobStatus.RUNNING: frozenset({
        JobStatus.PAUSED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.STOPPED,
        JobStatus.EXPIRED,
    }),
    JobStatus.PAUSED: frozenset({
        JobStatus.RUNNING,
        JobStatus.STOPPED,
        JobStatus.EXPIRED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.STOPPED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.EXPIRED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[current]


# Error codes recorded on failed jobs.
AUTH_REVOKED = "AUTH_REVOKED"
WRITER_FATAL = "WRITER_FATAL"
DISPATCH_RETRIES_EXHAUSTED = "DISPATCH_RETRIES_EXHAUSTED"
ENGINE_VALIDATION_ERROR = "ENGINE_VALIDATION_ERROR"
STUCK_JOB = "STUCK_JOB"
MAX_RUNTIME_EXCEEDED = "MAX_RUNTIME_EXCEEDED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string, so stored timestamps compare lexically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Job:
    """One typing task."""

    id: str
    owner_id: str
    document_ref: str
    full_text: str
    total_chars: int
    current_index: int
    duration_minutes: int
    typing_profile: TypingProfile
    target_wpm: int | None
    status: JobStatus
    throttle_delay_ms: int
    dispatch_failures: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    expires_at: datetime
    error_code: str | None

    @classmethod
    def from_row(cls, row: dict) -> Job:
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            document_ref=row["document_ref"],
            full_text=row["full_text"],
            total_chars=row["total_chars"],
            current_index=row["current_index"],
            duration_minutes=row["duration_minutes"],
            typing_profile=TypingProfile(row["typing_profile"]),
            target_wpm=row["target_wpm"],
            status=JobStatus(row["status"]),
            throttle_delay_ms=row["throttle_delay_ms"],
            dispatch_failures=row["dispatch_failures"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            completed_at=from_iso(row["completed_at"]),
            expires_at=from_iso(row["expires_at"]),
            error_code=row["error_code"],
        )

    def progress(self) -> dict:
        """Progress view returned by the control surface. Never includes text."""
        return {
            "id": self.id,
            "status": self.status.value,
            "currentIndex": self.current_index,
            "totalChars": self.total_chars,
            "durationMinutes": self.duration_minutes,
            "typingProfile": self.typing_profile.value,
            "documentRef": self.document_ref,
            "errorCode": self.error_code,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "completedAt": to_iso(self.completed_at) if self.completed_at else None,
        }


@dataclass(frozen=True)
class JobEvent:
    id: int
    job_id: str
    type: EventType
    details: dict
    created_at: datetime

    @classmethod
    def from_row(cls, row: dict) -> JobEvent:
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            type=EventType(row["type"]),
            details=json.loads(row["details"]) if row["details"] else {},
            created_at=from_iso(row["created_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "details": self.details,
            "createdAt": to_iso(self.created_at),
        }


@dataclass(frozen=True)
class DocumentLock:
    id: int
    owner_id: str
    document_ref: str
    state: LockState
    current_job_id: str | None

    @classmethod
    def from_row(cls, row: dict) -> DocumentLock:
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            document_ref=row["document_ref"],
            state=LockState(row["state"]),
            current_job_id=row["current_job_id"],
        )
