"""
Read-only job status surface.
"""

from uuid import UUID

from ai_jobs.registry.base import DEFAULT_PAGE_SIZE, JobRegistry
from ai_jobs.types.api import JobView


class JobStatusService:
    """Client-facing reads over the Job Registry. Polling never mutates state."""

    def __init__(self, registry: JobRegistry):
        self.registry = registry

    async def get(self, job_id: UUID) -> JobView:
        """Current view of a job. Raises JobNotFound."""
        record = await self.registry.get(job_id)
        return JobView.model_validate(record.model_dump())

    async def list_by_requester(
        self, requester_key: str, limit: int = DEFAULT_PAGE_SIZE
    ) -> list[JobView]:
        """Up to ``limit`` of the requester's jobs, newest first."""
        views: list[JobView] = []
        if limit <= 0:
            return views
        async for record in self.registry.list_by_requester(
            requester_key, page_size=min(limit, DEFAULT_PAGE_SIZE)
        ):
            views.append(JobView.model_validate(record.model_dump()))
            if len(views) >= limit:
                break
        return views
