"""
Worker module.
Contains the worker pool, job handlers and the worker process entrypoint.
"""

from ai_jobs.worker.handlers import HandlerRegistry, build_default_handlers, execute_job
from ai_jobs.worker.pool import WorkerPool
from ai_jobs.worker.retry import RetryPolicy

__all__ = [
    "HandlerRegistry",
    "build_default_handlers",
    "execute_job",
    "RetryPolicy",
    "WorkerPool",
]
