"""
Batch inspection routes.
"""

from fastapi import APIRouter, HTTPException, status

from jobengine.api.dependencies import ConnectionBackend
from jobengine.types.api import BatchResponse

router = APIRouter(prefix="/v1/batches", tags=["Batches"])


@router.get(
    "/{batch_id}",
    response_model=BatchResponse,
    summary="Get batch progress",
)
async def get_batch(batch_id: str, backend: ConnectionBackend) -> BatchResponse:
    batch = await backend.get_batch(batch_id)
    if batch is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Batch {batch_id} not found",
        )
    return BatchResponse.from_batch(batch)


@router.post(
    "/{batch_id}/cancel",
    response_model=BatchResponse,
    summary="Cancel a batch",
    description="Members not yet started are skipped; running members finish.",
)
async def cancel_batch(batch_id: str, backend: ConnectionBackend) -> BatchResponse:
    await backend.cancel_batch(batch_id)
    batch = await backend.get_batch(batch_id)
    if batch is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Batch {batch_id} not found",
        )
    return BatchResponse.from_batch(batch)
