"""
Error taxonomy shared by the dispatcher, stores and workers.
"""

from typing import Any
from uuid import UUID


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class JobValidationError(JobQueueError):
    """
    Malformed submission: unknown kind, payload failing its shape contract
    or invalid options. The job is never created.
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class StoreUnavailable(JobQueueError):
    """The backing store (queue or registry) cannot be reached."""

    def __init__(self, store: str, detail: str = ""):
        message = f"{store} store unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.store = store


class InvalidLock(JobQueueError):
    """The lock token is stale, mismatched or expired."""

    def __init__(self, job_id: UUID | str):
        super().__init__(f"Lock on job {job_id} is not held by the caller")
        self.job_id = job_id


class DuplicateJobId(JobQueueError):
    """A job with this id already exists."""

    def __init__(self, job_id: UUID | str):
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class JobNotFound(JobQueueError):
    """No job with this id exists."""

    def __init__(self, job_id: UUID | str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(JobQueueError):
    """A registry update does not follow the job state machine."""

    def __init__(self, job_id: UUID | str, message: str):
        super().__init__(f"Job {job_id}: {message}")
        self.job_id = job_id


class HandlerError(JobQueueError):
    """Raised by job handlers to classify a failure."""

    retryable: bool = True


class HandlerTransientError(HandlerError):
    """Failure worth retrying (timeouts, rate limits, upstream outages)."""

    retryable = True


class HandlerPermanentError(HandlerError):
    """Failure guaranteed to repeat (malformed payload, rejected input)."""

    retryable = False
