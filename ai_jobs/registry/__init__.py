"""
Registry module.
Contains the Job Registry contract and its SQL and in-memory backends.
"""

from ai_jobs.registry.base import JobRegistry
from ai_jobs.registry.memory import InMemoryJobRegistry
from ai_jobs.registry.sql import SqlJobRegistry

__all__ = ["JobRegistry", "SqlJobRegistry", "InMemoryJobRegistry"]
