"""
Worker process for executing AI jobs.

Connects to the queue store and the job registry, runs a worker pool and
turns SIGTERM/SIGINT into a graceful drain. Exits with status 1 when a store
is unreachable at start and 0 once drained.
"""

import asyncio
import logging
import signal
import sys

from ai_jobs.config import Settings, get_settings
from ai_jobs.errors import StoreUnavailable
from ai_jobs.observability.logging import bind_context, clear_context, setup_logging
from ai_jobs.observability.tracing import setup_tracing
from ai_jobs.services import Services, build_services
from ai_jobs.worker.pool import WorkerPool

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(shutdown: asyncio.Event) -> list[signal.Signals]:
    """
    Set ``shutdown`` on SIGTERM/SIGINT.

    Returns:
        The signals a handler was installed for.
    """
    loop = asyncio.get_running_loop()
    installed = []

    def on_signal(sig: signal.Signals) -> None:
        logger.info("Shutdown signal received", extra={"signal": sig.name})
        shutdown.set()

    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, on_signal, sig)
        except (NotImplementedError, RuntimeError, ValueError):
            # Not the main thread, or a platform without signal support
            logger.debug("Cannot install signal handler", extra={"signal": sig.name})
        else:
            installed.append(sig)
    return installed


def remove_signal_handlers(signals: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in signals:
        loop.remove_signal_handler(sig)


async def run_async(
    settings: Settings | None = None,
    shutdown: asyncio.Event | None = None,
    services: Services | None = None,
) -> int:
    """
    Run the worker until shutdown.

    Args:
        settings: Configuration. Defaults to environment settings.
        shutdown: Event ending the run. Created (and wired to signals) if
            not given.
        services: Pre-built services (tests pass in-memory backends).

    Returns:
        Process exit status.
    """
    settings = settings or get_settings()
    setup_logging(settings)
    setup_tracing(settings)

    services = services or build_services(settings)
    try:
        await services.connect()
    except StoreUnavailable as e:
        logger.error(
            "Cannot start worker: backing store unavailable",
            extra={"store": e.store, "error": str(e)},
        )
        await services.close()
        return 1

    pool = WorkerPool(
        services.queue,
        services.registry,
        services.handlers,
        settings=settings,
        metrics=services.metrics,
    )
    bind_context(component="worker", worker_id=pool.worker_id)

    shutdown = shutdown or asyncio.Event()
    signals = install_signal_handlers(shutdown)

    logger.info(
        "Worker ready",
        extra={"kinds": services.handlers.kinds(), "concurrency": pool.concurrency},
    )
    try:
        await pool.run(shutdown)
    finally:
        remove_signal_handlers(signals)
        await services.close()
        clear_context()

    return 0


def run() -> None:
    """Run the worker."""
    sys.exit(asyncio.run(run_async()))


if __name__ == "__main__":
    run()
