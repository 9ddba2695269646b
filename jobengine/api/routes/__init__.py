"""
API routes module.
"""

from jobengine.api.routes.batches import router as batches_router
from jobengine.api.routes.failed_jobs import router as failed_jobs_router
from jobengine.api.routes.health import router as health_router
from jobengine.api.routes.queues import router as queues_router

__all__ = ["health_router", "failed_jobs_router", "batches_router", "queues_router"]
