"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ai_jobs.constants import JobPriority, JobStatus


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    """
    Authoritative job record as held by the Job Registry.

    Lock token and lease expiry are not part of the record: they live in the
    Queue Store only.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    requester_key: str | None = None
    payload: dict[str, Any]
    status: JobStatus = JobStatus.QUEUED
    priority: JobPriority = JobPriority.NORMAL
    attempt: int = 0
    max_attempts: int
    result: Any = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_retryable(self) -> bool:
        """Check if the job has attempts left."""
        return self.attempt < self.max_attempts


class JobPatch(BaseModel):
    """
    Requested change to a registry record.

    Fields left as None are not touched. ``expected_attempt`` turns the update
    into a compare-and-set on the stored attempt counter.
    """

    status: JobStatus | None = None
    attempt: int | None = None
    result: Any = None
    error: str | None = None
    expected_attempt: int | None = None


@dataclass
class ClaimedJob:
    """
    A job handed out by the Queue Store under an exclusive, time-bounded lock.
    """

    job_id: UUID
    kind: str
    payload: dict[str, Any]
    priority: JobPriority
    worker_id: str
    lock_token: str
    lock_expires_at: datetime
    enqueued_at: datetime


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    """

    job_id: UUID
    kind: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    worker_id: str
    lease_expires_at: datetime
    requester_key: str | None = None

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts


class JobResult(BaseModel):
    """
    Outcome of one handler invocation.
    """

    success: bool
    output: Any = None
    error: str | None = None
    retryable: bool = True
    duration_ms: float | None = None


class QueueStats(BaseModel):
    """Entry counts per area of the Queue Store."""

    ready: dict[JobPriority, int]
    delayed: int
    leased: int
    dead: int

    @property
    def total_pending(self) -> int:
        return sum(self.ready.values()) + self.delayed
