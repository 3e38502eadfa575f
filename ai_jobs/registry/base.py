"""
Job Registry contract and the transition rules every backend enforces.
"""

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from ai_jobs.constants import ALLOWED_TRANSITIONS, JobStatus
from ai_jobs.errors import InvalidTransition
from ai_jobs.types.job import JobPatch, JobRecord

DEFAULT_PAGE_SIZE = 50


class JobRegistry(Protocol):
    """
    Authoritative, queryable job records.

    Records are never deleted. Updates are conditional: a backend applies a
    patch only if the stored status (and attempt, when the patch carries
    ``expected_attempt``) is still what the caller last observed.
    """

    async def connect(self) -> None:
        ...

    async def ping(self) -> bool:
        """Check connectivity without raising."""
        ...

    async def close(self) -> None:
        ...

    async def create(self, job: JobRecord) -> JobRecord:
        """Insert a new record. Raise DuplicateJobId if the id exists."""
        ...

    async def update(self, job_id: UUID, patch: JobPatch) -> JobRecord:
        """Apply ``patch`` atomically. Raise JobNotFound or InvalidTransition."""
        ...

    async def get(self, job_id: UUID) -> JobRecord:
        """Current record. Raise JobNotFound."""
        ...

    def list_by_requester(
        self, requester_key: str, page_size: int = DEFAULT_PAGE_SIZE
    ) -> AsyncIterator[JobRecord]:
        """Records of one requester, newest first, fetched page by page."""
        ...


def check_transition(current: JobRecord, patch: JobPatch) -> None:
    """
    Validate ``patch`` against the stored record.

    Raises:
        InvalidTransition: Terminal record, disallowed status change, stale
            ``expected_attempt`` or an attempt beyond ``max_attempts``.
    """
    if current.status.is_terminal:
        raise InvalidTransition(current.id, f"status {current.status} is terminal")

    if patch.status is not None and patch.status not in ALLOWED_TRANSITIONS[current.status]:
        raise InvalidTransition(
            current.id, f"cannot move from {current.status} to {patch.status}"
        )

    if patch.expected_attempt is not None and patch.expected_attempt != current.attempt:
        raise InvalidTransition(
            current.id,
            f"expected attempt {patch.expected_attempt}, stored attempt is {current.attempt}",
        )

    if patch.attempt is not None and patch.attempt > current.max_attempts:
        raise InvalidTransition(
            current.id,
            f"attempt {patch.attempt} exceeds max_attempts {current.max_attempts}",
        )


def patch_values(current: JobRecord, patch: JobPatch, now: datetime) -> dict[str, Any]:
    """
    Column values to write for an already validated patch.

    ``result`` survives only on a succeeded record; ``completed_at`` is set
    once a terminal status is reached.
    """
    status = patch.status or current.status
    values: dict[str, Any] = {"status": status, "updated_at": now}

    if patch.attempt is not None:
        values["attempt"] = patch.attempt

    if status is JobStatus.SUCCEEDED:
        values["result"] = patch.result
        values["error"] = None
    else:
        values["result"] = None
        if patch.error is not None:
            values["error"] = patch.error

    if status.is_terminal:
        values["completed_at"] = now

    return values
