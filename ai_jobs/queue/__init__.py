"""
Queue module.
Contains the Queue Store contract and its Redis and in-memory backends.
"""

from ai_jobs.queue.base import QueueStore
from ai_jobs.queue.memory import InMemoryQueueStore
from ai_jobs.queue.redis_store import RedisQueueStore

__all__ = ["QueueStore", "RedisQueueStore", "InMemoryQueueStore"]
