"""
In-memory Job Registry.

Not durable: meant for tests and local development.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from uuid import UUID

from ai_jobs.errors import DuplicateJobId, JobNotFound
from ai_jobs.registry.base import DEFAULT_PAGE_SIZE, check_transition, patch_values
from ai_jobs.types.job import JobPatch, JobRecord, utcnow

logger = logging.getLogger(__name__)


class InMemoryJobRegistry:
    """Dict-backed implementation of the JobRegistry protocol."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._records: dict[UUID, JobRecord] = {}

    async def connect(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            if job.id in self._records:
                raise DuplicateJobId(job.id)
            self._records[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    async def update(self, job_id: UUID, patch: JobPatch) -> JobRecord:
        async with self._lock:
            current = self._records.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            check_transition(current, patch)
            updated = current.model_copy(
                update=patch_values(current, patch, utcnow()), deep=True
            )
            self._records[job_id] = updated
            return updated.model_copy(deep=True)

    async def get(self, job_id: UUID) -> JobRecord:
        async with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise JobNotFound(job_id)
            return record.model_copy(deep=True)

    async def list_by_requester(
        self, requester_key: str, page_size: int = DEFAULT_PAGE_SIZE
    ) -> AsyncIterator[JobRecord]:
        async with self._lock:
            snapshot = sorted(
                (
                    record.model_copy(deep=True)
                    for record in self._records.values()
                    if record.requester_key == requester_key
                ),
                key=lambda record: (record.created_at, record.id),
                reverse=True,
            )
        for record in snapshot:
            yield record
