"""
Reaper module.
Contains the lease reaper for recovering expired jobs.
"""

from ai_jobs.reaper.main import LeaseReaper, run

__all__ = ["LeaseReaper", "run"]
