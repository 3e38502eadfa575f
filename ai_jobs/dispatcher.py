"""
Job submission.

The dispatcher validates a submission against the handler registry, writes
the registry record and only then enqueues the job. A job that cannot be
enqueued is marked ``failed`` so no ``queued`` record is left behind without
a queue entry.
"""

import logging
from typing import Any
from uuid import uuid4

from ai_jobs.config import Settings, get_settings
from ai_jobs.constants import SPAN_SUBMIT_JOB, JobStatus
from ai_jobs.errors import JobValidationError, StoreUnavailable
from ai_jobs.observability.metrics import MetricsCollector, get_metrics
from ai_jobs.observability.tracing import get_tracer
from ai_jobs.queue.base import QueueStore
from ai_jobs.registry.base import JobRegistry
from ai_jobs.types.api import SubmitOptions, SubmitResult
from ai_jobs.types.job import JobPatch, JobRecord
from ai_jobs.worker.handlers import HandlerRegistry

logger = logging.getLogger(__name__)


class Dispatcher:
    """Accepts jobs and hands them to the registry and the queue store."""

    def __init__(
        self,
        queue: QueueStore,
        registry: JobRegistry,
        handlers: HandlerRegistry,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.queue = queue
        self.registry = registry
        self.handlers = handlers
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()

    def resolve_max_attempts(self, kind: str, requested: int | None) -> int:
        """
        Retry ceiling for a new job: submit option, then the per-kind
        setting, then the kind's registration default, then the global
        default.

        Raises:
            JobValidationError: If the result is outside 1..max_attempts_ceiling.
        """
        settings = self._settings
        spec = self.handlers.get(kind)

        if requested is not None:
            max_attempts = requested
        elif kind in settings.kind_max_attempts:
            max_attempts = settings.kind_max_attempts[kind]
        elif spec is not None and spec.max_attempts is not None:
            max_attempts = spec.max_attempts
        else:
            max_attempts = settings.default_max_attempts

        if not 1 <= max_attempts <= settings.max_attempts_ceiling:
            raise JobValidationError(
                f"max_attempts must be between 1 and {settings.max_attempts_ceiling}",
                errors=[{"loc": ["max_attempts"], "msg": "out of range", "input": max_attempts}],
            )
        return max_attempts

    async def submit(
        self,
        kind: str,
        payload: Any,
        options: SubmitOptions | None = None,
        requester_key: str | None = None,
    ) -> SubmitResult:
        """
        Submit a job for asynchronous execution.

        Returns as soon as the job is recorded and enqueued; never waits for
        the handler.

        Args:
            kind: Registered handler identifier.
            payload: Handler input, checked against the kind's payload model.
            options: Retry ceiling and priority overrides.
            requester_key: Opaque key later used to list the caller's jobs.

        Returns:
            The new job id with status ``queued``.

        Raises:
            JobValidationError: Unknown kind, bad payload or bad options.
            StoreUnavailable: The registry or the queue store is unreachable.
        """
        options = options or SubmitOptions()

        with get_tracer().start_as_current_span(SPAN_SUBMIT_JOB) as span:
            span.set_attribute("kind", kind)

            normalized = self.handlers.validate(kind, payload)
            max_attempts = self.resolve_max_attempts(kind, options.max_attempts)

            job = JobRecord(
                id=uuid4(),
                kind=kind,
                requester_key=requester_key,
                payload=normalized,
                status=JobStatus.QUEUED,
                priority=options.priority,
                attempt=0,
                max_attempts=max_attempts,
            )
            span.set_attribute("job_id", str(job.id))

            await self.registry.create(job)
            try:
                await self.queue.enqueue(job)
            except Exception as e:
                if isinstance(e, StoreUnavailable):
                    self._metrics.record_store_error("queue", "enqueue")
                logger.error(
                    "Enqueue failed, marking job failed",
                    extra={"job_id": str(job.id), "kind": kind, "error": str(e)},
                )
                await self.registry.update(
                    job.id,
                    JobPatch(status=JobStatus.FAILED, error=f"enqueue failed: {e}"),
                )
                raise

        self._metrics.record_job_submitted(kind, options.priority.value)
        logger.info(
            "Job submitted",
            extra={
                "job_id": str(job.id),
                "kind": kind,
                "priority": options.priority.value,
                "max_attempts": max_attempts,
            },
        )
        return SubmitResult(id=job.id, status=JobStatus.QUEUED)
