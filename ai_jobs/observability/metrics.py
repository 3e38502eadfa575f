"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ai_jobs.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_RETRIED,
    METRIC_JOBS_SUBMITTED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
    METRIC_STORE_ERRORS,
)
from ai_jobs.types.job import QueueStats

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the AI job queue.

    Collects metrics for:
    - Queue depth per area and priority
    - Job submissions, completions and retries
    - Handler execution duration
    - Lease acquisition and expiry
    - Backing store errors
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of entries in the queue store",
            ["area", "priority"],
            registry=self._registry,
        )

        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted",
            ["kind", "priority"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs that reached a terminal status",
            ["kind", "status"],
            registry=self._registry,
        )

        self.jobs_retried = Counter(
            METRIC_JOBS_RETRIED,
            "Total number of transient failures released for retry",
            ["kind"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Handler execution duration in seconds",
            ["kind", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases returned to the queue",
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.store_errors = Counter(
            METRIC_STORE_ERRORS,
            "Total number of backing store failures",
            ["store", "operation"],
            registry=self._registry,
        )

    def record_job_submitted(self, kind: str, priority: str) -> None:
        self.jobs_submitted.labels(kind=kind, priority=priority).inc()

    def record_job_completed(self, kind: str, status: str, duration_seconds: float) -> None:
        """Record a job reaching a terminal status."""
        self.jobs_completed.labels(kind=kind, status=status).inc()
        self.job_duration.labels(kind=kind, status=status).observe(duration_seconds)

    def record_job_retried(self, kind: str) -> None:
        self.jobs_retried.labels(kind=kind).inc()

    def record_lease_expired(self, count: int = 1) -> None:
        self.lease_expired.inc(count)

    def record_lease_acquired(self, worker_id: str, count: int = 1) -> None:
        self.lease_acquired.labels(worker_id=worker_id).inc(count)

    def record_store_error(self, store: str, operation: str) -> None:
        self.store_errors.labels(store=store, operation=operation).inc()

    def update_queue_depth(self, stats: QueueStats) -> None:
        """Publish a queue store snapshot."""
        for priority, count in stats.ready.items():
            self.queue_depth.labels(area="ready", priority=priority.value).set(count)
        self.queue_depth.labels(area="delayed", priority="all").set(stats.delayed)
        self.queue_depth.labels(area="leased", priority="all").set(stats.leased)
        self.queue_depth.labels(area="dead", priority="all").set(stats.dead)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the process-wide metrics collector.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
