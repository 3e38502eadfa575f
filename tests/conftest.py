"""
Pytest configuration and shared fixtures.
"""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any
from uuid import UUID, uuid4

import fakeredis
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry

from ai_jobs.api.main import create_app
from ai_jobs.config import Settings
from ai_jobs.constants import JobStatus
from ai_jobs.db.connection import Database
from ai_jobs.dispatcher import Dispatcher
from ai_jobs.observability.metrics import MetricsCollector
from ai_jobs.queue.memory import InMemoryQueueStore
from ai_jobs.queue.redis_store import RedisQueueStore
from ai_jobs.registry.base import JobRegistry
from ai_jobs.registry.memory import InMemoryJobRegistry
from ai_jobs.registry.sql import SqlJobRegistry
from ai_jobs.services import Services, build_services
from ai_jobs.types.job import JobRecord
from ai_jobs.worker.ai_client import PlaceholderAICapability
from ai_jobs.worker.handlers import HandlerRegistry, build_default_handlers


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def test_settings() -> Settings:
    """Settings tuned for fast, in-process tests."""
    return Settings(
        queue_backend="memory",
        registry_backend="memory",
        database_url="sqlite+aiosqlite:///:memory:",
        log_level="DEBUG",
        log_format="console",
        worker_id="test-worker",
        worker_lease_duration_seconds=5,
        worker_poll_interval_seconds=0.01,
        worker_max_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=0.5,
        worker_shutdown_grace_seconds=2,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        reaper_interval_seconds=0.05,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_queue() -> InMemoryQueueStore:
    return InMemoryQueueStore()


@pytest.fixture
def memory_registry() -> InMemoryJobRegistry:
    return InMemoryJobRegistry()


@pytest_asyncio.fixture
async def redis_queue(clock: FakeClock) -> AsyncGenerator[RedisQueueStore]:
    """Redis queue store on an in-process fake server with Lua support."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    store = RedisQueueStore(key_prefix=f"test-{uuid4().hex[:8]}", clock=clock, client=client)
    yield store
    await store.close()


@pytest_asyncio.fixture
async def sql_registry(tmp_path) -> AsyncGenerator[SqlJobRegistry]:
    """SQL registry on a throwaway SQLite database."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/registry.db", echo=False)
    await database.create_all()
    registry = SqlJobRegistry(database)
    yield registry
    await registry.close()


@pytest.fixture
def handlers() -> HandlerRegistry:
    """Built-in AI handlers backed by placeholder output."""
    return build_default_handlers(PlaceholderAICapability())


@pytest.fixture
def dispatcher(
    memory_queue: InMemoryQueueStore,
    memory_registry: InMemoryJobRegistry,
    handlers: HandlerRegistry,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> Dispatcher:
    return Dispatcher(memory_queue, memory_registry, handlers, settings=test_settings, metrics=metrics)


@pytest.fixture
def services(
    test_settings: Settings,
    memory_queue: InMemoryQueueStore,
    memory_registry: InMemoryJobRegistry,
    metrics: MetricsCollector,
) -> Services:
    """Full service graph on in-memory backends."""
    return build_services(
        test_settings,
        queue=memory_queue,
        registry=memory_registry,
        ai=PlaceholderAICapability(),
        metrics=metrics,
    )


@pytest.fixture
def app(services: Services) -> FastAPI:
    return create_app(services)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def make_record() -> Callable[..., JobRecord]:
    """Factory for registry records."""

    def _make(**overrides: Any) -> JobRecord:
        fields: dict[str, Any] = {
            "id": uuid4(),
            "kind": "generate-toc",
            "payload": {"book_id": "book-1", "page_count": 120},
            "max_attempts": 3,
        }
        fields.update(overrides)
        return JobRecord(**fields)

    return _make


@pytest.fixture
def sample_payloads() -> dict[str, dict[str, Any]]:
    """A valid payload for every built-in kind."""
    return {
        "grade-problem-set": {
            "course_id": "cs-101",
            "problem_set_id": "ps-3",
            "submission": "def add(a, b): return a + b",
        },
        "generate-explanation": {
            "course_id": "cs-101",
            "problem_id": "p-7",
            "question": "Why is binary search O(log n)?",
        },
        "generate-toc": {"book_id": "book-1", "page_count": 320},
        "summarize-selection": {"book_id": "book-1", "text": "Entropy always increases.", "page_number": 12},
        "generate-class-page": {"course_id": "phys-2", "topic": "Entropy", "prompt": "Intro level"},
    }


async def _wait_for_status(
    registry: JobRegistry,
    job_id: UUID,
    statuses: set[JobStatus],
    timeout: float = 5.0,
) -> JobRecord:
    """Poll the registry until the job reaches one of ``statuses``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        record = await registry.get(job_id)
        if record.status in statuses:
            return record
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {record.status}")
        await asyncio.sleep(0.01)


async def _wait_until(predicate: Callable[[], Awaitable[bool] | bool], timeout: float = 5.0) -> None:
    """Poll until ``predicate`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        outcome = predicate()
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if outcome:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_for_status() -> Callable[..., Awaitable[JobRecord]]:
    return _wait_for_status


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    return _wait_until
