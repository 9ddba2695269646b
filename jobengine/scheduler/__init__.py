"""
Recurring job dispatch with single-server and overlap guards.
"""

from jobengine.scheduler.main import ScheduledTask, Scheduler

__all__ = ["ScheduledTask", "Scheduler"]
