"""
Type definitions for the AI job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from ai_jobs.types.api import (
    HealthResponse,
    JobListResponse,
    JobView,
    KindListResponse,
    SubmitJobRequest,
    SubmitOptions,
    SubmitResult,
)
from ai_jobs.types.job import (
    ClaimedJob,
    JobContext,
    JobPatch,
    JobRecord,
    JobResult,
    QueueStats,
    utcnow,
)

__all__ = [
    # API types
    "SubmitJobRequest",
    "SubmitOptions",
    "SubmitResult",
    "JobView",
    "JobListResponse",
    "KindListResponse",
    "HealthResponse",
    # Job types
    "JobRecord",
    "JobPatch",
    "ClaimedJob",
    "JobContext",
    "JobResult",
    "QueueStats",
    "utcnow",
]
