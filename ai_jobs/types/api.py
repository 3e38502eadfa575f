"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ai_jobs.constants import DEFAULT_PRIORITY, JobPriority, JobStatus


class SubmitOptions(BaseModel):
    """Recognized submission options."""

    max_attempts: int | None = Field(
        default=None, description="Overrides the default retry ceiling"
    )
    priority: JobPriority = Field(
        default=DEFAULT_PRIORITY, description="Claim ordering tier"
    )


class SubmitJobRequest(BaseModel):
    """Request body for submitting a new job."""

    kind: str = Field(..., description="Handler identifier")
    payload: dict[str, Any] = Field(..., description="Handler input")
    max_attempts: int | None = Field(default=None, ge=1, description="Maximum attempts")
    priority: JobPriority = Field(default=DEFAULT_PRIORITY, description="Job priority")

    def options(self) -> SubmitOptions:
        return SubmitOptions(max_attempts=self.max_attempts, priority=self.priority)


class SubmitResult(BaseModel):
    """Synchronous acceptance of a submission."""

    id: UUID
    status: JobStatus


class JobView(BaseModel):
    """Client-facing job record (no internal lock fields)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    requester_key: str | None
    payload: dict[str, Any]
    status: JobStatus
    priority: JobPriority
    attempt: int
    max_attempts: int
    result: Any = None
    error: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class JobListResponse(BaseModel):
    """Jobs of one requester, newest first."""

    jobs: list[JobView]
    count: int


class KindListResponse(BaseModel):
    """Registered job kinds."""

    kinds: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    queue: str
    registry: str
    timestamp: datetime
