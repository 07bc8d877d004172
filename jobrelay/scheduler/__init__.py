"""
Scheduler: stale-lease reaping and dispatch of claimed jobs to the worker pool.
"""

from jobrelay.scheduler.main import Scheduler

__all__ = ["Scheduler"]
