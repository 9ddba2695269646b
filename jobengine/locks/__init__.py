"""
Locks module.
Contains lock managers and single-instance execution guards.
"""

from jobengine.locks.base import LockManager
from jobengine.locks.database import DatabaseLockManager
from jobengine.locks.guards import on_one_server, without_overlapping
from jobengine.locks.memory import MemoryLockManager

__all__ = [
    "LockManager",
    "MemoryLockManager",
    "DatabaseLockManager",
    "on_one_server",
    "without_overlapping",
]
