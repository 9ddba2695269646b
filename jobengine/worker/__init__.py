"""
Worker process: reserves envelopes and runs their handlers.
"""

from jobengine.worker.backoff import compute_backoff
from jobengine.worker.main import Worker, WorkerOptions

__all__ = ["Worker", "WorkerOptions", "compute_backoff"]
