"""
Queue inspection routes.
"""

from fastapi import APIRouter, HTTPException, Query, status

from jobengine.api.dependencies import Backends
from jobengine.observability.metrics import get_metrics
from jobengine.types.api import QueueResponse

router = APIRouter(prefix="/v1/queues", tags=["Queues"])


@router.get(
    "/{name}",
    response_model=QueueResponse,
    summary="Queue depth",
    description="Count envelopes on a queue that are not reserved by a worker.",
)
async def get_queue(
    name: str,
    backends: Backends,
    connection: str | None = Query(default=None, description="Queue connection name"),
) -> QueueResponse:
    try:
        connection_name = backends.connection_name_for(name, connection)
        backend = backends.connection(connection_name)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None

    pending = await backend.count_pending(name)
    get_metrics().update_queue_depth(connection_name, name, pending)
    return QueueResponse(name=name, connection=connection_name, pending=pending)
