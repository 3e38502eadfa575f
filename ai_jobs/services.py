"""
Wiring of stores, handlers and services for the API, worker and reaper
processes.
"""

import logging
from dataclasses import dataclass

from ai_jobs.config import Settings, get_settings
from ai_jobs.db.connection import Database
from ai_jobs.dispatcher import Dispatcher
from ai_jobs.observability.metrics import MetricsCollector, get_metrics
from ai_jobs.observability.tracing import instrument_sqlalchemy
from ai_jobs.queue.base import QueueStore
from ai_jobs.queue.memory import InMemoryQueueStore
from ai_jobs.queue.redis_store import RedisQueueStore
from ai_jobs.registry.base import JobRegistry
from ai_jobs.registry.memory import InMemoryJobRegistry
from ai_jobs.registry.sql import SqlJobRegistry
from ai_jobs.status import JobStatusService
from ai_jobs.worker.ai_client import AICapability, build_ai_capability
from ai_jobs.worker.handlers import HandlerRegistry, build_default_handlers

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a process needs, built once at startup and passed down."""

    settings: Settings
    queue: QueueStore
    registry: JobRegistry
    handlers: HandlerRegistry
    ai: AICapability
    dispatcher: Dispatcher
    status: JobStatusService
    metrics: MetricsCollector

    async def connect(self) -> None:
        """Verify both stores. Raises StoreUnavailable."""
        await self.queue.connect()
        await self.registry.connect()

    async def close(self) -> None:
        await self.ai.close()
        await self.queue.close()
        await self.registry.close()


def build_queue_store(settings: Settings) -> QueueStore:
    if settings.queue_backend == "memory":
        logger.warning("Using the in-memory queue store; jobs are not durable")
        return InMemoryQueueStore()
    return RedisQueueStore(settings.redis_url, settings.queue_key_prefix)


def build_registry(settings: Settings) -> JobRegistry:
    if settings.registry_backend == "memory":
        logger.warning("Using the in-memory job registry; records are not durable")
        return InMemoryJobRegistry()
    database = Database(settings.database_url)
    instrument_sqlalchemy(database.engine)
    return SqlJobRegistry(database)


def build_services(
    settings: Settings | None = None,
    *,
    queue: QueueStore | None = None,
    registry: JobRegistry | None = None,
    handlers: HandlerRegistry | None = None,
    ai: AICapability | None = None,
    metrics: MetricsCollector | None = None,
) -> Services:
    """
    Build the service graph. Anything passed in is used as is; the rest is
    built from settings.
    """
    settings = settings or get_settings()
    queue = queue or build_queue_store(settings)
    registry = registry or build_registry(settings)
    ai = ai or build_ai_capability(settings)
    handlers = handlers or build_default_handlers(ai)
    metrics = metrics or get_metrics()

    return Services(
        settings=settings,
        queue=queue,
        registry=registry,
        handlers=handlers,
        ai=ai,
        dispatcher=Dispatcher(queue, registry, handlers, settings=settings, metrics=metrics),
        status=JobStatusService(registry),
        metrics=metrics,
    )
