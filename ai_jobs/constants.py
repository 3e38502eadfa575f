"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states as recorded in the Job Registry.

    State transitions:
    - QUEUED -> PROCESSING (claimed by a worker)
    - QUEUED -> FAILED (enqueue failed right after submission)
    - PROCESSING -> PROCESSING (re-claimed after lease expiry)
    - PROCESSING -> QUEUED (transient failure, retry after backoff; lease expired)
    - PROCESSING -> SUCCEEDED (handler returned)
    - PROCESSING -> FAILED (permanent handler failure)
    - PROCESSING -> DEAD_LETTER (transient failure on the last attempt)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTER = "dead-letter"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is possible."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.DEAD_LETTER}
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.PROCESSING,
            JobStatus.QUEUED,
            JobStatus.SUCCEEDED,
            JobStatus.FAILED,
            JobStatus.DEAD_LETTER,
        }
    ),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.DEAD_LETTER: frozenset(),
}


class JobPriority(StrEnum):
    """Job priority levels for queue ordering."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# Priority weights for ordering (higher = processed first)
PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.LOW: 1,
    JobPriority.NORMAL: 5,
    JobPriority.HIGH: 10,
    JobPriority.CRITICAL: 100,
}

# Order in which priority tiers are served by claim
CLAIM_ORDER: tuple[JobPriority, ...] = tuple(
    sorted(PRIORITY_WEIGHTS, key=PRIORITY_WEIGHTS.__getitem__, reverse=True)
)


class JobKind(StrEnum):
    """Built-in AI job kinds."""

    GRADE_PROBLEM_SET = "grade-problem-set"
    GENERATE_EXPLANATION = "generate-explanation"
    GENERATE_TOC = "generate-toc"
    SUMMARIZE_SELECTION = "summarize-selection"
    GENERATE_CLASS_PAGE = "generate-class-page"


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_DURATION_SECONDS = 30
DEFAULT_PRIORITY = JobPriority.NORMAL
LEASE_EXPIRED_ERROR = "lease expired"

# API constants
API_V1_PREFIX = "/v1"
REQUESTER_KEY_HEADER = "X-Requester-Key"

# Metrics names
METRIC_QUEUE_DEPTH = "ai_job_queue_depth"
METRIC_JOBS_SUBMITTED = "ai_jobs_submitted_total"
METRIC_JOBS_COMPLETED = "ai_jobs_completed_total"
METRIC_JOBS_RETRIED = "ai_jobs_retried_total"
METRIC_JOB_DURATION = "ai_job_duration_seconds"
METRIC_LEASE_EXPIRED = "ai_job_lease_expired_total"
METRIC_LEASE_ACQUIRED = "ai_job_lease_acquired_total"
METRIC_STORE_ERRORS = "ai_job_store_errors_total"

# Trace span names
SPAN_SUBMIT_JOB = "submit_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
