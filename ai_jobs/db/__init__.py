"""
Database module.
Contains the async connection wrapper and the job registry table.
"""

from ai_jobs.db.connection import Database
from ai_jobs.db.models import Base, Job

__all__ = ["Database", "Base", "Job"]
