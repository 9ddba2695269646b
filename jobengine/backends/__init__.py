"""
Queue backends.
Contains the backend contract and its concrete transports.
"""

from jobengine.backends.base import Backend, Clock
from jobengine.backends.database import DatabaseBackend
from jobengine.backends.manager import BackendManager
from jobengine.backends.memory import MemoryBackend

__all__ = [
    "Backend",
    "Clock",
    "DatabaseBackend",
    "MemoryBackend",
    "BackendManager",
]
