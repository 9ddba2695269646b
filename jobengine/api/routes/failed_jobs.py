"""
Failed job store routes.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status

from jobengine.api.dependencies import ConnectionBackend
from jobengine.exceptions import FailedJobNotFound
from jobengine.types.api import (
    DeletedResponse,
    FailedJobListResponse,
    FailedJobResponse,
    RetryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/failed-jobs", tags=["Failed jobs"])


@router.get(
    "",
    response_model=FailedJobListResponse,
    summary="List failed jobs",
)
async def list_failed_jobs(
    backend: ConnectionBackend,
    queue: str | None = Query(default=None, description="Only failed jobs from this queue"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> FailedJobListResponse:
    failed = await backend.list_failed(queue=queue, limit=limit)
    return FailedJobListResponse(
        failed_jobs=[FailedJobResponse.from_failed(f) for f in failed],
        total=len(failed),
    )


@router.post(
    "/retry-all",
    response_model=RetryResponse,
    summary="Retry every failed job",
)
async def retry_all_failed_jobs(backend: ConnectionBackend) -> RetryResponse:
    envelopes = await backend.retry_all_failed()
    logger.info("Retried all failed jobs", extra={"count": len(envelopes)})
    return RetryResponse(
        job_ids=[e.id for e in envelopes],
        message=f"{len(envelopes)} jobs queued for retry",
    )


@router.get(
    "/{failed_id}",
    response_model=FailedJobResponse,
    summary="Get a failed job",
    description="Look up a failed job by its failed id or its original envelope id.",
)
async def get_failed_job(failed_id: str, backend: ConnectionBackend) -> FailedJobResponse:
    failed = await backend.get_failed(failed_id)
    if failed is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Failed job {failed_id} not found",
        )
    return FailedJobResponse.from_failed(failed)


@router.post(
    "/{failed_id}/retry",
    response_model=RetryResponse,
    summary="Retry a failed job",
    description="Re-enqueue the job under a new id with attempts reset.",
)
async def retry_failed_job(failed_id: str, backend: ConnectionBackend) -> RetryResponse:
    try:
        envelope = await backend.retry_failed(failed_id)
    except FailedJobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None
    return RetryResponse(job_ids=[envelope.id])


@router.delete(
    "/{failed_id}",
    response_model=DeletedResponse,
    summary="Forget a failed job",
)
async def forget_failed_job(failed_id: str, backend: ConnectionBackend) -> DeletedResponse:
    if not await backend.forget_failed(failed_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Failed job {failed_id} not found",
        )
    return DeletedResponse(deleted=1)


@router.delete(
    "",
    response_model=DeletedResponse,
    summary="Flush the failed job store",
)
async def flush_failed_jobs(backend: ConnectionBackend) -> DeletedResponse:
    deleted = await backend.flush_failed()
    logger.info("Flushed failed jobs", extra={"count": deleted})
    return DeletedResponse(deleted=deleted)
