"""
Producer-side API: jobs, the dispatcher and batch coordination.
"""

from jobengine.bus.batches import BatchCoordinator
from jobengine.bus.dispatcher import Dispatcher
from jobengine.bus.job import Job
from jobengine.bus.pending import PendingBatch, PendingChain, PendingDispatch

__all__ = [
    "BatchCoordinator",
    "Dispatcher",
    "Job",
    "PendingBatch",
    "PendingChain",
    "PendingDispatch",
]
