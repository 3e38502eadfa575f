"""
In-memory Queue Store.

Same semantics as the Redis store, held in process memory behind an asyncio
lock. Not durable: meant for tests and local development.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from ai_jobs.constants import CLAIM_ORDER, JobPriority
from ai_jobs.errors import DuplicateJobId, InvalidLock, StoreUnavailable
from ai_jobs.types.job import ClaimedJob, JobRecord, QueueStats

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    kind: str
    payload: dict[str, Any]
    priority: JobPriority
    enqueued_at: float


@dataclass
class _Lease:
    token: str
    worker_id: str
    expires_at: float


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class InMemoryQueueStore:
    """In-process implementation of the QueueStore protocol."""

    def __init__(self, clock: Callable[[], float] = time.time):
        """
        Args:
            clock: Returns the current time in epoch seconds.
        """
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: dict[UUID, _Entry] = {}
        self._ready: dict[JobPriority, deque[UUID]] = {p: deque() for p in JobPriority}
        self._delayed: dict[UUID, float] = {}
        self._leases: dict[UUID, _Lease] = {}
        self._dead: dict[UUID, tuple[float, str]] = {}
        # Flip to False to simulate an unreachable store
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailable("queue", "in-memory store marked unavailable")

    async def connect(self) -> None:
        self._check_available()

    async def ping(self) -> bool:
        return self.available

    async def close(self) -> None:
        return None

    async def enqueue(self, job: JobRecord) -> None:
        async with self._lock:
            self._check_available()
            if job.id in self._entries or job.id in self._dead:
                raise DuplicateJobId(job.id)
            self._entries[job.id] = _Entry(
                kind=job.kind,
                payload=dict(job.payload),
                priority=job.priority,
                enqueued_at=self._clock(),
            )
            self._ready[job.priority].append(job.id)

    def _reclaim_expired(self, now: float) -> list[UUID]:
        expired = sorted(
            (lease.expires_at, job_id)
            for job_id, lease in self._leases.items()
            if lease.expires_at < now
        )
        reclaimed = []
        for _, job_id in expired:
            del self._leases[job_id]
            entry = self._entries.get(job_id)
            if entry is not None:
                self._ready[entry.priority].appendleft(job_id)
                reclaimed.append(job_id)
        return reclaimed

    def _promote_delayed(self, now: float) -> None:
        due = sorted((at, job_id) for job_id, at in self._delayed.items() if at <= now)
        for _, job_id in due:
            del self._delayed[job_id]
            entry = self._entries.get(job_id)
            if entry is not None:
                self._ready[entry.priority].append(job_id)

    async def claim(self, worker_id: str, lease_duration: float) -> ClaimedJob | None:
        async with self._lock:
            self._check_available()
            now = self._clock()
            self._reclaim_expired(now)
            self._promote_delayed(now)

            for priority in CLAIM_ORDER:
                ready = self._ready[priority]
                while ready:
                    job_id = ready.popleft()
                    entry = self._entries.get(job_id)
                    if entry is None:
                        continue
                    lease = _Lease(
                        token=uuid4().hex,
                        worker_id=worker_id,
                        expires_at=now + lease_duration,
                    )
                    self._leases[job_id] = lease
                    return ClaimedJob(
                        job_id=job_id,
                        kind=entry.kind,
                        payload=dict(entry.payload),
                        priority=entry.priority,
                        worker_id=worker_id,
                        lock_token=lease.token,
                        lock_expires_at=_to_datetime(lease.expires_at),
                        enqueued_at=_to_datetime(entry.enqueued_at),
                    )
            return None

    def _take_lease(self, job_id: UUID, lock_token: str) -> _Lease:
        lease = self._leases.get(job_id)
        if lease is None or lease.token != lock_token or lease.expires_at < self._clock():
            raise InvalidLock(job_id)
        return lease

    async def acknowledge(self, job_id: UUID, lock_token: str) -> None:
        async with self._lock:
            self._check_available()
            self._take_lease(job_id, lock_token)
            del self._leases[job_id]
            self._entries.pop(job_id, None)

    async def release(self, job_id: UUID, lock_token: str, backoff_delay: float) -> None:
        async with self._lock:
            self._check_available()
            self._take_lease(job_id, lock_token)
            del self._leases[job_id]
            self._delayed[job_id] = self._clock() + max(0.0, backoff_delay)

    async def move_to_dead_letter(self, job_id: UUID, lock_token: str, reason: str = "") -> None:
        async with self._lock:
            self._check_available()
            self._take_lease(job_id, lock_token)
            del self._leases[job_id]
            self._dead[job_id] = (self._clock(), reason)
            self._entries.pop(job_id, None)

    async def extend_lease(self, job_id: UUID, lock_token: str, lease_duration: float) -> None:
        async with self._lock:
            self._check_available()
            lease = self._take_lease(job_id, lock_token)
            lease.expires_at = self._clock() + lease_duration

    async def expired_leases(self) -> list[UUID]:
        async with self._lock:
            self._check_available()
            now = self._clock()
            return [job_id for job_id, lease in self._leases.items() if lease.expires_at < now]

    async def reap_expired(self) -> list[UUID]:
        async with self._lock:
            self._check_available()
            return self._reclaim_expired(self._clock())

    async def stats(self) -> QueueStats:
        async with self._lock:
            self._check_available()
            return QueueStats(
                ready={p: len(q) for p, q in self._ready.items()},
                delayed=len(self._delayed),
                leased=len(self._leases),
                dead=len(self._dead),
            )

    def dead_letters(self) -> dict[UUID, str]:
        """Dead-lettered job ids with their reasons."""
        return {job_id: reason for job_id, (_, reason) in self._dead.items()}
