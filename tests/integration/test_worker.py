"""
Integration tests for worker functionality.

Jobs go through the real dispatcher, queue store, registry and worker pool;
only the handlers are swapped for controllable test doubles.
"""

import asyncio
from collections import Counter

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from ai_jobs.constants import LEASE_EXPIRED_ERROR, JobStatus
from ai_jobs.dispatcher import Dispatcher
from ai_jobs.errors import HandlerPermanentError, HandlerTransientError
from ai_jobs.observability.metrics import MetricsCollector
from ai_jobs.queue.memory import InMemoryQueueStore
from ai_jobs.services import build_services
from ai_jobs.types.api import SubmitOptions
from ai_jobs.worker import main as worker_main
from ai_jobs.worker.ai_client import PlaceholderAICapability
from ai_jobs.worker.handlers import HandlerRegistry
from ai_jobs.worker.pool import WorkerPool

TERMINAL = {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.DEAD_LETTER}


class Scripted:
    """Test handlers whose behavior is driven by the payload."""

    def __init__(self):
        self.calls: Counter = Counter()
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.handlers = HandlerRegistry()

        @self.handlers.register("flaky")
        async def flaky(context):
            self.calls[context.job_id] += 1
            if context.attempt <= context.payload.get("fail_times", 0):
                raise HandlerTransientError(f"transient failure on attempt {context.attempt}")
            return {"attempt": context.attempt}

        @self.handlers.register("reject")
        async def reject(context):
            self.calls[context.job_id] += 1
            raise HandlerPermanentError("input rejected")

        @self.handlers.register("crash")
        async def crash(context):
            self.calls[context.job_id] += 1
            raise RuntimeError("handler bug")

        @self.handlers.register("slow")
        async def slow(context):
            self.calls[context.job_id] += 1
            await asyncio.sleep(context.payload.get("seconds", 0.05))
            return {"slept": True}

        @self.handlers.register("gated")
        async def gated(context):
            self.calls[context.job_id] += 1
            self.started.set()
            if context.attempt == 1:
                await self.release.wait()
            return {"attempt": context.attempt}


@pytest.fixture
def scripted() -> Scripted:
    return Scripted()


@pytest.fixture
def collector_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def worker_metrics(collector_registry) -> MetricsCollector:
    return MetricsCollector(registry=collector_registry)


@pytest.fixture
def submit(memory_queue, memory_registry, scripted, test_settings, worker_metrics):
    """Submit a job through the dispatcher onto the in-memory stores."""
    dispatcher = Dispatcher(
        memory_queue, memory_registry, scripted.handlers, settings=test_settings, metrics=worker_metrics
    )

    async def _submit(kind, payload=None, max_attempts=None):
        result = await dispatcher.submit(kind, payload or {}, SubmitOptions(max_attempts=max_attempts))
        return result.id

    return _submit


@pytest.fixture
def make_pool(memory_queue, memory_registry, scripted, test_settings, worker_metrics):
    def _make(**overrides) -> WorkerPool:
        return WorkerPool(
            overrides.pop("queue", memory_queue),
            overrides.pop("registry", memory_registry),
            overrides.pop("handlers", scripted.handlers),
            settings=test_settings,
            metrics=worker_metrics,
            **overrides,
        )

    return _make


@pytest_asyncio.fixture
async def running_pool(make_pool):
    """A running worker pool, stopped after the test."""
    pool = make_pool(concurrency=2)
    task = asyncio.create_task(pool.run())
    yield pool
    pool.stop()
    await asyncio.wait_for(task, timeout=5)


class TestJobOutcomes:
    """Tests for how execution outcomes are resolved."""

    @pytest.mark.asyncio
    async def test_success(self, running_pool, submit, memory_registry, memory_queue, wait_for_status):
        """Test that a successful job stores its result and leaves the queue."""
        job_id = await submit("flaky")

        record = await wait_for_status(memory_registry, job_id, TERMINAL)

        assert record.status == JobStatus.SUCCEEDED
        assert record.attempt == 1
        assert record.result == {"attempt": 1}
        assert record.error is None
        assert record.completed_at is not None
        stats = await memory_queue.stats()
        assert stats.total_pending == 0
        assert stats.leased == 0

    @pytest.mark.asyncio
    async def test_retry_then_success(self, running_pool, submit, memory_registry, scripted, wait_for_status):
        """Test that a transient failure is retried and the job then succeeds."""
        job_id = await submit("flaky", {"fail_times": 1}, max_attempts=3)

        record = await wait_for_status(memory_registry, job_id, TERMINAL)

        assert record.status == JobStatus.SUCCEEDED
        assert record.attempt == 2
        assert record.result == {"attempt": 2}
        assert record.error is None
        assert scripted.calls[job_id] == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_dead_letter(
        self, running_pool, submit, memory_registry, memory_queue, scripted, wait_for_status
    ):
        """Test that a job failing on every attempt ends in dead-letter."""
        job_id = await submit("flaky", {"fail_times": 5}, max_attempts=2)

        record = await wait_for_status(memory_registry, job_id, TERMINAL)

        assert record.status == JobStatus.DEAD_LETTER
        assert record.attempt == 2
        assert record.error == "transient failure on attempt 2"
        assert record.result is None
        assert scripted.calls[job_id] == 2
        assert job_id in memory_queue.dead_letters()

    @pytest.mark.asyncio
    async def test_permanent_failure(
        self, running_pool, submit, memory_registry, memory_queue, scripted, wait_for_status
    ):
        """Test that a permanent failure is not retried."""
        job_id = await submit("reject", max_attempts=5)

        record = await wait_for_status(memory_registry, job_id, TERMINAL)

        assert record.status == JobStatus.FAILED
        assert record.attempt == 1
        assert record.error == "input rejected"
        assert scripted.calls[job_id] == 1
        assert memory_queue.dead_letters()[job_id] == "input rejected"

    @pytest.mark.asyncio
    async def test_handler_crash_is_retried(
        self, running_pool, submit, memory_registry, scripted, collector_registry, wait_for_status
    ):
        """Test that an unexpected exception counts as a transient failure."""
        job_id = await submit("crash", max_attempts=3)

        record = await wait_for_status(memory_registry, job_id, TERMINAL)

        assert record.status == JobStatus.DEAD_LETTER
        assert record.attempt == 3
        assert "handler bug" in record.error
        assert scripted.calls[job_id] == 3
        assert collector_registry.get_sample_value("ai_jobs_retried_total", {"kind": "crash"}) == 2.0
        assert collector_registry.get_sample_value(
            "ai_jobs_completed_total", {"kind": "crash", "status": "dead-letter"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_worker_survives_failures(self, running_pool, submit, memory_registry, wait_for_status):
        """Test that a failing job does not stop the worker from taking the next one."""
        bad = await submit("crash", max_attempts=1)
        good = await submit("flaky")

        assert (await wait_for_status(memory_registry, bad, TERMINAL)).status == JobStatus.DEAD_LETTER
        assert (await wait_for_status(memory_registry, good, TERMINAL)).status == JobStatus.SUCCEEDED


class TestDeliveryEdgeCases:
    """Tests for deliveries that do not match the registry."""

    @pytest.mark.asyncio
    async def test_orphan_queue_entry_dead_lettered(
        self, running_pool, memory_queue, make_record, wait_until
    ):
        """Test that a queued job without a registry record is set aside."""
        record = make_record(kind="flaky", payload={})
        await memory_queue.enqueue(record)

        await wait_until(lambda: record.id in memory_queue.dead_letters())

        assert memory_queue.dead_letters()[record.id] == "no registry record for queued job"

    @pytest.mark.asyncio
    async def test_duplicate_delivery_of_finished_job(
        self, running_pool, memory_queue, memory_registry, make_record, scripted, wait_until
    ):
        """Test that a re-delivered finished job is dropped without running again."""
        record = make_record(kind="flaky", payload={}, status=JobStatus.SUCCEEDED, attempt=1, result="done")
        await memory_registry.create(record)
        await memory_queue.enqueue(record)

        async def drained() -> bool:
            stats = await memory_queue.stats()
            return stats.total_pending == 0 and stats.leased == 0

        await wait_until(drained)

        assert scripted.calls[record.id] == 0
        stored = await memory_registry.get(record.id)
        assert stored.status == JobStatus.SUCCEEDED
        assert stored.result == "done"
        assert record.id not in memory_queue.dead_letters()

    @pytest.mark.asyncio
    async def test_redelivery_with_no_attempts_left(
        self, running_pool, memory_queue, memory_registry, make_record, scripted, wait_for_status
    ):
        """Test that a job whose last attempt lost its lease is dead-lettered, not run again."""
        record = make_record(kind="flaky", payload={}, status=JobStatus.PROCESSING, attempt=2, max_attempts=2)
        await memory_registry.create(record)
        await memory_queue.enqueue(record)

        stored = await wait_for_status(memory_registry, record.id, TERMINAL)

        assert stored.status == JobStatus.DEAD_LETTER
        assert stored.attempt == 2
        assert stored.error == LEASE_EXPIRED_ERROR
        assert scripted.calls[record.id] == 0
        assert record.id in memory_queue.dead_letters()


class TestConcurrency:
    """Tests for multiple workers sharing one queue."""

    @pytest.mark.asyncio
    async def test_no_double_processing(self, make_pool, submit, memory_registry, scripted, wait_for_status):
        """Test that concurrent pools execute every job exactly once."""
        job_ids = [await submit("slow", {"seconds": 0.01}) for _ in range(20)]

        pools = [make_pool(worker_id=f"worker-{i}", concurrency=3) for i in range(3)]
        tasks = [asyncio.create_task(pool.run()) for pool in pools]
        try:
            for job_id in job_ids:
                record = await wait_for_status(memory_registry, job_id, TERMINAL)
                assert record.status == JobStatus.SUCCEEDED
                assert record.attempt == 1
        finally:
            for pool in pools:
                pool.stop()
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=5)

        assert all(scripted.calls[job_id] == 1 for job_id in job_ids)

    @pytest.mark.asyncio
    async def test_heartbeat_prevents_redelivery(
        self, make_pool, submit, memory_registry, scripted, wait_for_status
    ):
        """Test that a job running past its lease is not handed to another worker."""
        job_id = await submit("slow", {"seconds": 0.8})
        options = {"concurrency": 1, "lease_duration": 0.3, "heartbeat_interval": 0.1}

        first = make_pool(worker_id="worker-1", **options)
        second = make_pool(worker_id="worker-2", **options)
        tasks = [asyncio.create_task(first.run())]
        try:
            await wait_for_status(memory_registry, job_id, {JobStatus.PROCESSING})
            tasks.append(asyncio.create_task(second.run()))

            record = await wait_for_status(memory_registry, job_id, TERMINAL)
        finally:
            first.stop()
            second.stop()
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=5)

        assert record.status == JobStatus.SUCCEEDED
        assert record.attempt == 1
        assert scripted.calls[job_id] == 1

    @pytest.mark.asyncio
    async def test_expired_lease_picked_up_by_another_worker(
        self, make_pool, submit, memory_registry, scripted, wait_for_status
    ):
        """Test that a job stuck on one worker is completed by another once the lease expires."""
        job_id = await submit("gated")
        options = {"concurrency": 1, "lease_duration": 0.2, "heartbeat_interval": 30, "shutdown_grace": 0}

        stuck = make_pool(worker_id="worker-stuck", **options)
        healthy = make_pool(worker_id="worker-healthy", **options)
        stuck_task = asyncio.create_task(stuck.run())
        await asyncio.wait_for(scripted.started.wait(), timeout=5)

        healthy_task = asyncio.create_task(healthy.run())
        try:
            record = await wait_for_status(memory_registry, job_id, TERMINAL)
        finally:
            stuck.stop()
            healthy.stop()
            await asyncio.wait_for(asyncio.gather(stuck_task, healthy_task), timeout=5)

        assert record.status == JobStatus.SUCCEEDED
        assert record.attempt == 2
        assert record.result == {"attempt": 2}
        assert scripted.calls[job_id] == 2


class FaultyQueue(InMemoryQueueStore):
    """In-memory queue whose claim or extend_lease raises a non-store error a set number of times."""

    def __init__(self, claim_failures: int = 0, extend_failures: int = 0):
        super().__init__()
        self.claim_failures = claim_failures
        self.extend_failures = extend_failures
        self.extend_calls = 0

    async def claim(self, worker_id, lease_duration):
        if self.claim_failures:
            self.claim_failures -= 1
            raise RuntimeError("corrupt queue entry")
        return await super().claim(worker_id, lease_duration)

    async def extend_lease(self, job_id, lock_token, lease_duration):
        self.extend_calls += 1
        if self.extend_failures:
            self.extend_failures -= 1
            raise RuntimeError("unexpected reply")
        return await super().extend_lease(job_id, lock_token, lease_duration)


class TestLoopResilience:
    """Tests for worker loops hitting errors that are not store outages."""

    @pytest.mark.asyncio
    async def test_claim_loop_survives_unexpected_error(
        self, make_pool, memory_registry, scripted, test_settings, worker_metrics, wait_for_status
    ):
        """Test that an unexpected claim error is logged and the slot keeps claiming."""
        queue = FaultyQueue(claim_failures=1)
        dispatcher = Dispatcher(
            queue, memory_registry, scripted.handlers, settings=test_settings, metrics=worker_metrics
        )
        job_id = (await dispatcher.submit("flaky", {}, SubmitOptions())).id

        pool = make_pool(queue=queue, concurrency=1)
        task = asyncio.create_task(pool.run())
        try:
            record = await wait_for_status(memory_registry, job_id, TERMINAL)
        finally:
            pool.stop()
            await asyncio.wait_for(task, timeout=5)

        assert queue.claim_failures == 0
        assert record.status == JobStatus.SUCCEEDED
        assert record.attempt == 1
        assert scripted.calls[job_id] == 1

    @pytest.mark.asyncio
    async def test_heartbeat_survives_unexpected_error(
        self, make_pool, memory_registry, scripted, test_settings, worker_metrics, wait_for_status
    ):
        """Test that one failed lease extension does not stop later heartbeats."""
        queue = FaultyQueue(extend_failures=1)
        dispatcher = Dispatcher(
            queue, memory_registry, scripted.handlers, settings=test_settings, metrics=worker_metrics
        )
        job_id = (await dispatcher.submit("slow", {"seconds": 0.8}, SubmitOptions())).id
        options = {"concurrency": 1, "lease_duration": 0.3, "heartbeat_interval": 0.1}

        first = make_pool(queue=queue, worker_id="worker-1", **options)
        second = make_pool(queue=queue, worker_id="worker-2", **options)
        tasks = [asyncio.create_task(first.run())]
        try:
            await wait_for_status(memory_registry, job_id, {JobStatus.PROCESSING})
            tasks.append(asyncio.create_task(second.run()))

            record = await wait_for_status(memory_registry, job_id, TERMINAL)
        finally:
            first.stop()
            second.stop()
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=5)

        assert queue.extend_failures == 0
        assert queue.extend_calls >= 3
        assert record.status == JobStatus.SUCCEEDED
        assert record.attempt == 1
        assert scripted.calls[job_id] == 1


class TestWorkerProcess:
    """Tests for the worker process entry point."""

    @pytest.mark.asyncio
    async def test_graceful_shutdown_finishes_in_flight_job(
        self, test_settings, memory_queue, memory_registry, scripted, submit, wait_for_status
    ):
        """Test that shutdown lets the running job finish within the grace period."""
        services = build_services(
            test_settings,
            queue=memory_queue,
            registry=memory_registry,
            handlers=scripted.handlers,
            ai=PlaceholderAICapability(),
            metrics=MetricsCollector(registry=CollectorRegistry()),
        )
        job_id = await submit("gated")
        shutdown = asyncio.Event()

        worker = asyncio.create_task(worker_main.run_async(test_settings, shutdown, services))
        await asyncio.wait_for(scripted.started.wait(), timeout=5)

        shutdown.set()
        await asyncio.sleep(0.05)
        assert not worker.done()
        scripted.release.set()

        assert await asyncio.wait_for(worker, timeout=5) == 0
        record = await wait_for_status(memory_registry, job_id, TERMINAL, timeout=0.1)
        assert record.status == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_grace_period_exceeded_abandons_job(
        self, make_pool, submit, memory_registry, memory_queue, scripted, wait_for_status
    ):
        """Test that a job outliving the grace period is left for lease expiry."""
        job_id = await submit("gated")
        pool = make_pool(concurrency=1, shutdown_grace=0.1)
        task = asyncio.create_task(pool.run())
        await asyncio.wait_for(scripted.started.wait(), timeout=5)

        pool.stop()
        await asyncio.wait_for(task, timeout=5)

        record = await memory_registry.get(job_id)
        assert record.status == JobStatus.PROCESSING
        assert pool.in_flight == []
        assert (await memory_queue.stats()).leased == 1

    @pytest.mark.asyncio
    async def test_no_claims_after_shutdown(self, make_pool, submit, memory_registry):
        """Test that a stopped pool does not pick up new work."""
        pool = make_pool()
        pool.stop()
        await asyncio.wait_for(pool.run(), timeout=5)

        job_id = await submit("flaky")
        await asyncio.sleep(0.05)

        assert (await memory_registry.get(job_id)).status == JobStatus.QUEUED

    @pytest.mark.asyncio
    async def test_exit_status_when_store_unavailable(self, test_settings, memory_queue, services):
        """Test that the worker refuses to start without its stores."""
        memory_queue.available = False

        assert await worker_main.run_async(test_settings, asyncio.Event(), services) == 1


class TestRedisAndSqlBackends:
    """End-to-end run on the Redis queue store and the SQL registry."""

    @pytest.mark.asyncio
    async def test_job_lifecycle(
        self, redis_queue, sql_registry, handlers, test_settings, wait_for_status
    ):
        """Test submit, execute and poll on the production backends."""
        metrics = MetricsCollector(registry=CollectorRegistry())
        dispatcher = Dispatcher(redis_queue, sql_registry, handlers, settings=test_settings, metrics=metrics)
        pool = WorkerPool(
            redis_queue, sql_registry, handlers, settings=test_settings, metrics=metrics, concurrency=2
        )

        submitted = await dispatcher.submit(
            "summarize-selection",
            {"book_id": "book-1", "text": "Entropy always increases.", "page_number": 12},
            requester_key="student-1",
        )
        task = asyncio.create_task(pool.run())
        try:
            record = await wait_for_status(sql_registry, submitted.id, TERMINAL)
        finally:
            pool.stop()
            await asyncio.wait_for(task, timeout=5)

        assert record.status == JobStatus.SUCCEEDED
        assert record.attempt == 1
        assert record.result["page_number"] == 12
        assert record.result["summary"]
        stats = await redis_queue.stats()
        assert stats.leased == 0
        assert stats.total_pending == 0
