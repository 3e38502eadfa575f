"""
Queue Store contract.

A durable FIFO-with-priority store handing out jobs under exclusive,
time-bounded locks.
"""

from typing import Protocol
from uuid import UUID

from ai_jobs.types.job import ClaimedJob, JobRecord, QueueStats


class QueueStore(Protocol):
    """
    Queue Store interface implemented by the Redis and in-memory backends.

    Ordering: FIFO by enqueue time inside a priority tier, tiers served from
    critical down to low. Released entries stay invisible to ``claim`` until
    their delay elapses; leases that expire without acknowledge/release make
    the job claimable again.
    """

    async def connect(self) -> None:
        """Open and verify the connection. Raise StoreUnavailable."""
        ...

    async def ping(self) -> bool:
        """Check connectivity without raising."""
        ...

    async def close(self) -> None:
        ...

    async def enqueue(self, job: JobRecord) -> None:
        """
        Persist the job and make it eligible for claim.
        Raise StoreUnavailable or DuplicateJobId; never drop silently.
        """
        ...

    async def claim(self, worker_id: str, lease_duration: float) -> ClaimedJob | None:
        """
        Atomically take the next eligible job under a fresh lock token.
        Returns None when nothing is eligible.
        """
        ...

    async def acknowledge(self, job_id: UUID, lock_token: str) -> None:
        """Remove a completed job. Raise InvalidLock if the lock is not held."""
        ...

    async def release(self, job_id: UUID, lock_token: str, backoff_delay: float) -> None:
        """Make the job eligible again after ``backoff_delay`` seconds. Raise InvalidLock."""
        ...

    async def move_to_dead_letter(self, job_id: UUID, lock_token: str, reason: str = "") -> None:
        """Move the job to the non-retryable holding area. Raise InvalidLock."""
        ...

    async def extend_lease(self, job_id: UUID, lock_token: str, lease_duration: float) -> None:
        """Push the lease expiry to now + ``lease_duration``. Raise InvalidLock."""
        ...

    async def expired_leases(self) -> list[UUID]:
        """Ids whose lease has expired, without changing anything."""
        ...

    async def reap_expired(self) -> list[UUID]:
        """Return expired leases to the eligible set; report their ids."""
        ...

    async def stats(self) -> QueueStats:
        ...
