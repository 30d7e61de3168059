"""
Queue, locks, job handlers and the recurring job table for reporting.
"""

from .defaults import DEFAULT_JOBS
from .handlers import JobHandlerRegistry
from .queue import RedisJobQueue

__all__ = ["DEFAULT_JOBS", "JobHandlerRegistry", "RedisJobQueue"]
