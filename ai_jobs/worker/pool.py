"""
Worker pool executing claimed jobs.

Each pool runs ``concurrency`` independent claim loops plus one heartbeat
task. A loop claims a job from the Queue Store, moves the registry record to
``processing``, runs the handler and resolves the outcome: registry first,
then the matching store operation (acknowledge, release with backoff or
dead-letter).
"""

import asyncio
import logging
import os
import time
from uuid import UUID

from ai_jobs.config import Settings, get_settings
from ai_jobs.constants import (
    LEASE_EXPIRED_ERROR,
    SPAN_CLAIM_JOB,
    SPAN_EXECUTE_JOB,
    JobStatus,
)
from ai_jobs.errors import InvalidLock, InvalidTransition, JobNotFound, StoreUnavailable
from ai_jobs.observability.metrics import MetricsCollector, get_metrics
from ai_jobs.observability.tracing import get_tracer
from ai_jobs.queue.base import QueueStore
from ai_jobs.registry.base import JobRegistry
from ai_jobs.types.job import ClaimedJob, JobContext, JobPatch, JobRecord, JobResult
from ai_jobs.worker.handlers import HandlerRegistry, execute_job
from ai_jobs.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Hostname + PID."""
    return f"{os.uname().nodename}-{os.getpid()}"


class WorkerPool:
    """
    Pool of claim-execute loops sharing one Queue Store and Job Registry.

    Features:
    - Exponential idle backoff when the queue is empty or a store is down
    - Heartbeat extending the leases of in-flight jobs
    - Graceful shutdown: stop claiming, give in-flight jobs a grace period,
      then cancel what is left and let the leases expire
    """

    def __init__(
        self,
        queue: QueueStore,
        registry: JobRegistry,
        handlers: HandlerRegistry,
        *,
        settings: Settings | None = None,
        worker_id: str | None = None,
        concurrency: int | None = None,
        lease_duration: float | None = None,
        poll_interval: float | None = None,
        max_poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
        shutdown_grace: float | None = None,
        retry_policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the pool. Unset options fall back to settings.

        Args:
            queue: Queue Store to claim from.
            registry: Job Registry holding the authoritative records.
            handlers: Kind to handler mapping.
            worker_id: Identifier recorded on leases. Defaults to hostname + PID.
            concurrency: Number of claim loops.
            lease_duration: Seconds a claim stays valid without a heartbeat.
            poll_interval: First idle backoff step in seconds.
            max_poll_interval: Idle backoff ceiling in seconds.
            heartbeat_interval: Seconds between lease extensions.
            shutdown_grace: Seconds in-flight jobs get once shutdown starts.
            retry_policy: Backoff for transient failures.
            metrics: Metrics collector. Defaults to the process-wide one.
        """
        settings = settings or get_settings()

        self.queue = queue
        self.registry = registry
        self.handlers = handlers

        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.concurrency = concurrency or settings.worker_concurrency
        self.lease_duration = lease_duration or settings.worker_lease_duration_seconds
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.max_poll_interval = max(
            max_poll_interval or settings.worker_max_poll_interval_seconds,
            self.poll_interval,
        )
        self.heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds
        self.shutdown_grace = (
            shutdown_grace if shutdown_grace is not None else settings.worker_shutdown_grace_seconds
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

        self._metrics = metrics or get_metrics()
        self._shutdown = asyncio.Event()
        self._in_flight: dict[UUID, ClaimedJob] = {}

    @property
    def in_flight(self) -> list[UUID]:
        """Ids of the jobs currently being executed."""
        return list(self._in_flight)

    def stop(self) -> None:
        """Stop claiming new jobs and start draining."""
        if not self._shutdown.is_set():
            logger.info("Worker pool stopping", extra={"worker_id": self.worker_id})
        self._shutdown.set()

    async def run(self, shutdown: asyncio.Event | None = None) -> None:
        """
        Run until ``shutdown`` (or ``stop()``) is signalled, then drain.

        Args:
            shutdown: External shutdown event, e.g. set by a signal handler.
        """
        if shutdown is not None:
            if self._shutdown.is_set():
                shutdown.set()
            self._shutdown = shutdown

        logger.info(
            "Worker pool starting",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency},
        )

        loops = [
            asyncio.create_task(self._claim_loop(slot), name=f"claim-loop-{slot}")
            for slot in range(self.concurrency)
        ]
        heartbeat = asyncio.create_task(self._heartbeat_loop(), name="heartbeat")

        try:
            await self._shutdown.wait()
        finally:
            # Covers cancellation of run() itself as well as a normal shutdown
            self._shutdown.set()

            if self._in_flight:
                logger.info(
                    "Waiting for in-flight jobs to complete",
                    extra={"count": len(self._in_flight), "grace_seconds": self.shutdown_grace},
                )
            done, pending = await asyncio.wait(loops, timeout=self.shutdown_grace)

            if pending:
                logger.warning(
                    "Grace period over, abandoning in-flight jobs to lease expiry",
                    extra={"job_ids": [str(job_id) for job_id in self._in_flight]},
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "Claim loop crashed",
                        exc_info=task.exception(),
                        extra={"task": task.get_name()},
                    )

            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        logger.info("Worker pool stopped", extra={"worker_id": self.worker_id})

    async def _pause(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless shutdown is signalled first."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _next_backoff(self, delay: float) -> float:
        return min(delay * 2, self.max_poll_interval)

    async def _claim_loop(self, slot: int) -> None:
        delay = self.poll_interval

        while not self._shutdown.is_set():
            try:
                claimed = await self._claim()
            except StoreUnavailable as e:
                self._metrics.record_store_error("queue", "claim")
                logger.warning(
                    "Queue store unavailable, backing off",
                    extra={"slot": slot, "delay": delay, "error": str(e)},
                )
                await self._pause(delay)
                delay = self._next_backoff(delay)
                continue
            except Exception as e:
                logger.exception(
                    "Error in claim loop",
                    extra={"slot": slot, "delay": delay, "error": str(e)},
                )
                await self._pause(delay)
                delay = self._next_backoff(delay)
                continue

            if claimed is None:
                await self._pause(delay)
                delay = self._next_backoff(delay)
                continue

            delay = self.poll_interval
            await self._process(claimed)

    async def _claim(self) -> ClaimedJob | None:
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            span.set_attribute("worker_id", self.worker_id)
            claimed = await self.queue.claim(self.worker_id, self.lease_duration)
            if claimed is not None:
                span.set_attribute("job_id", str(claimed.job_id))
                self._metrics.record_lease_acquired(self.worker_id)
        return claimed

    async def _process(self, claimed: ClaimedJob) -> None:
        """
        Run one claimed job, keeping every failure local to this job.
        """
        job_id = claimed.job_id
        self._in_flight[job_id] = claimed
        try:
            await self._execute_claimed(claimed)
        except StoreUnavailable as e:
            self._metrics.record_store_error(e.store, "process")
            logger.warning(
                "Store unavailable while processing job, leaving lease to expire",
                extra={"job_id": str(job_id), "error": str(e)},
            )
        except (InvalidLock, InvalidTransition) as e:
            logger.warning(
                "Job moved on under this worker, abandoning it",
                extra={"job_id": str(job_id), "error": str(e)},
            )
        except Exception as e:
            logger.exception(
                "Unexpected error processing job",
                extra={"job_id": str(job_id), "error": str(e)},
            )
        finally:
            self._in_flight.pop(job_id, None)

    async def _execute_claimed(self, claimed: ClaimedJob) -> None:
        job_id = claimed.job_id

        try:
            record = await self.registry.get(job_id)
        except JobNotFound:
            logger.error(
                "Claimed job has no registry record, dead-lettering it",
                extra={"job_id": str(job_id), "kind": claimed.kind},
            )
            await self.queue.move_to_dead_letter(
                job_id, claimed.lock_token, "no registry record for queued job"
            )
            return

        if record.status.is_terminal:
            logger.info(
                "Dropping duplicate delivery of a finished job",
                extra={"job_id": str(job_id), "status": record.status.value},
            )
            await self.queue.acknowledge(job_id, claimed.lock_token)
            return

        if not record.is_retryable:
            await self._dead_letter_exhausted(claimed, record)
            return

        attempt = record.attempt + 1
        await self.registry.update(
            job_id,
            JobPatch(
                status=JobStatus.PROCESSING,
                attempt=attempt,
                expected_attempt=record.attempt,
            ),
        )

        context = JobContext(
            job_id=job_id,
            kind=claimed.kind,
            attempt=attempt,
            max_attempts=record.max_attempts,
            payload=claimed.payload,
            worker_id=self.worker_id,
            lease_expires_at=claimed.lock_expires_at,
            requester_key=record.requester_key,
        )

        logger.info(
            "Executing job",
            extra={
                "job_id": str(job_id),
                "kind": claimed.kind,
                "attempt": attempt,
                "max_attempts": record.max_attempts,
            },
        )

        start_time = time.monotonic()
        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", str(job_id))
            span.set_attribute("kind", claimed.kind)
            span.set_attribute("attempt", attempt)

            result = await execute_job(self.handlers, context)
            span.set_attribute("success", result.success)

        await self._resolve(claimed, context, result, time.monotonic() - start_time)

    async def _dead_letter_exhausted(self, claimed: ClaimedJob, record: JobRecord) -> None:
        """
        The lease expired during the final attempt: the job is re-delivered
        with no attempts left. Pass through ``processing`` so the recorded
        history stays monotonic, then dead-letter.
        """
        error = record.error or LEASE_EXPIRED_ERROR
        logger.warning(
            "Attempts exhausted on re-delivery, dead-lettering job",
            extra={"job_id": str(record.id), "attempt": record.attempt, "error": error},
        )
        await self.registry.update(
            record.id,
            JobPatch(status=JobStatus.PROCESSING, expected_attempt=record.attempt),
        )
        await self.registry.update(
            record.id,
            JobPatch(
                status=JobStatus.DEAD_LETTER,
                error=error,
                expected_attempt=record.attempt,
            ),
        )
        await self.queue.move_to_dead_letter(record.id, claimed.lock_token, error)
        self._metrics.record_job_completed(record.kind, JobStatus.DEAD_LETTER.value, 0.0)

    async def _resolve(
        self,
        claimed: ClaimedJob,
        context: JobContext,
        result: JobResult,
        duration: float,
    ) -> None:
        """
        Record the outcome in the registry, then apply it to the queue store.
        """
        job_id = claimed.job_id
        attempt = context.attempt

        if result.success:
            await self.registry.update(
                job_id,
                JobPatch(
                    status=JobStatus.SUCCEEDED,
                    result=result.output,
                    expected_attempt=attempt,
                ),
            )
            await self.queue.acknowledge(job_id, claimed.lock_token)
            self._metrics.record_job_completed(context.kind, JobStatus.SUCCEEDED.value, duration)
            logger.info(
                "Job completed successfully",
                extra={"job_id": str(job_id), "attempt": attempt, "duration": f"{duration:.2f}s"},
            )
            return

        error = result.error or "Unknown error"

        if not result.retryable:
            await self.registry.update(
                job_id,
                JobPatch(status=JobStatus.FAILED, error=error, expected_attempt=attempt),
            )
            await self.queue.move_to_dead_letter(job_id, claimed.lock_token, error)
            self._metrics.record_job_completed(context.kind, JobStatus.FAILED.value, duration)
            logger.warning(
                "Job failed permanently",
                extra={"job_id": str(job_id), "attempt": attempt, "error": error},
            )
            return

        if context.is_last_attempt:
            await self.registry.update(
                job_id,
                JobPatch(status=JobStatus.DEAD_LETTER, error=error, expected_attempt=attempt),
            )
            await self.queue.move_to_dead_letter(job_id, claimed.lock_token, error)
            self._metrics.record_job_completed(context.kind, JobStatus.DEAD_LETTER.value, duration)
            logger.warning(
                "Job exhausted its attempts, moved to dead-letter",
                extra={"job_id": str(job_id), "attempt": attempt, "error": error},
            )
            return

        backoff = self.retry_policy.delay(attempt)
        await self.registry.update(
            job_id,
            JobPatch(status=JobStatus.QUEUED, error=error, expected_attempt=attempt),
        )
        await self.queue.release(job_id, claimed.lock_token, backoff)
        self._metrics.record_job_retried(context.kind)
        logger.warning(
            "Job failed, scheduled for retry",
            extra={
                "job_id": str(job_id),
                "attempt": attempt,
                "backoff_seconds": backoff,
                "error": error,
            },
        )

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend the leases of in-flight jobs so long-running
        AI calls are not re-delivered while still executing.
        """
        # Keeps running through the shutdown grace period; run() cancels it
        while True:
            await asyncio.sleep(self.heartbeat_interval)

            for job_id, claimed in list(self._in_flight.items()):
                try:
                    await self.queue.extend_lease(job_id, claimed.lock_token, self.lease_duration)
                except InvalidLock:
                    logger.warning("Lost lease on in-flight job", extra={"job_id": str(job_id)})
                except StoreUnavailable as e:
                    self._metrics.record_store_error("queue", "extend_lease")
                    logger.warning(
                        "Could not extend lease",
                        extra={"job_id": str(job_id), "error": str(e)},
                    )
                except Exception as e:
                    logger.exception(
                        "Error in heartbeat loop",
                        extra={"job_id": str(job_id), "error": str(e)},
                    )
                else:
                    logger.debug("Extended lease", extra={"job_id": str(job_id)})
