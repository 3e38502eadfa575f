"""
Lease reaper for recovering expired job leases.

Claims already pick up expired leases, but only when a worker polls. The
reaper returns them to the ready set on a schedule and flips the registry
records back from ``processing`` to ``queued`` so clients polling a job
whose worker died see the truth.
"""

import asyncio
import logging
import sys
from uuid import UUID

from ai_jobs.config import Settings, get_settings
from ai_jobs.constants import LEASE_EXPIRED_ERROR, JobStatus
from ai_jobs.errors import InvalidTransition, JobNotFound, StoreUnavailable
from ai_jobs.observability.logging import bind_context, clear_context, setup_logging
from ai_jobs.observability.metrics import MetricsCollector, get_metrics
from ai_jobs.queue.base import QueueStore
from ai_jobs.registry.base import JobRegistry
from ai_jobs.services import build_services
from ai_jobs.types.job import JobPatch, JobRecord
from ai_jobs.worker.main import install_signal_handlers, remove_signal_handlers

logger = logging.getLogger(__name__)


class LeaseReaper:
    """
    Periodically recovers expired leases.

    Each run:
    1. Returns expired leases in the queue store to the ready set
    2. Moves the matching registry records from PROCESSING to QUEUED,
       unless a worker re-claimed the job first
    3. Publishes lease-expiry and queue-depth metrics
    """

    def __init__(
        self,
        queue: QueueStore,
        registry: JobRegistry,
        interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            queue: Queue Store to reap.
            registry: Job Registry to correct.
            interval_seconds: Seconds between reaper runs.
            metrics: Metrics collector. Defaults to the process-wide one.
        """
        self.queue = queue
        self.registry = registry
        self.interval = interval_seconds or get_settings().reaper_interval_seconds
        self._metrics = metrics or get_metrics()
        self._stopped = asyncio.Event()

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of registry records moved back to queued.
        """
        # Snapshot before release; the compare-and-set below loses to any
        # worker that re-claims in between
        seen: dict[UUID, JobRecord] = {}
        for job_id in await self.queue.expired_leases():
            try:
                seen[job_id] = await self.registry.get(job_id)
            except JobNotFound:
                logger.warning("Expired lease has no registry record", extra={"job_id": str(job_id)})

        job_ids = await self.queue.reap_expired()
        if job_ids:
            self._metrics.record_lease_expired(len(job_ids))

        recovered = 0
        for job_id in job_ids:
            record = seen.get(job_id)
            if record is None or record.status is not JobStatus.PROCESSING:
                # Expired after the snapshot, orphaned, or never marked processing
                continue
            try:
                await self.registry.update(
                    job_id,
                    JobPatch(
                        status=JobStatus.QUEUED,
                        error=LEASE_EXPIRED_ERROR,
                        expected_attempt=record.attempt,
                    ),
                )
            except (JobNotFound, InvalidTransition) as e:
                # Re-claimed or resolved in the meantime
                logger.debug(
                    "Registry record left unchanged",
                    extra={"job_id": str(job_id), "reason": str(e)},
                )
            else:
                recovered += 1

        self._metrics.update_queue_depth(await self.queue.stats())
        return recovered

    async def start(self) -> None:
        """Run until ``stop()`` is called."""
        logger.info("Reaper starting", extra={"interval_seconds": self.interval})
        self._stopped.clear()

        while not self._stopped.is_set():
            try:
                recovered = await self.run_once()
                if recovered:
                    logger.info("Recovered expired leases", extra={"count": recovered})
            except StoreUnavailable as e:
                self._metrics.record_store_error(e.store, "reap_expired")
                logger.warning("Reaper run skipped, store unavailable", extra={"error": str(e)})
            except Exception as e:
                logger.exception("Error in reaper loop", extra={"error": str(e)})

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    def stop(self) -> None:
        """Stop the reaper loop after the current run."""
        logger.info("Reaper stopping")
        self._stopped.set()


async def run_async(settings: Settings | None = None) -> int:
    """Run the reaper process. Returns the exit status."""
    settings = settings or get_settings()
    setup_logging(settings)
    bind_context(component="reaper")

    services = build_services(settings)
    try:
        await services.connect()
    except StoreUnavailable as e:
        logger.error("Cannot start reaper: backing store unavailable", extra={"error": str(e)})
        await services.close()
        return 1

    reaper = LeaseReaper(
        services.queue,
        services.registry,
        interval_seconds=settings.reaper_interval_seconds,
        metrics=services.metrics,
    )

    shutdown = asyncio.Event()
    signals = install_signal_handlers(shutdown)
    reaper_task = asyncio.create_task(reaper.start())
    try:
        await shutdown.wait()
        reaper.stop()
        await reaper_task
    finally:
        remove_signal_handlers(signals)
        await services.close()
        clear_context()
    return 0


def run() -> None:
    """Run the reaper."""
    sys.exit(asyncio.run(run_async()))


if __name__ == "__main__":
    run()
