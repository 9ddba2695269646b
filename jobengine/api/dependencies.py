"""
FastAPI dependencies resolving the backend for a request.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Query, Request, status

from jobengine.backends.base import Backend
from jobengine.backends.manager import BackendManager


def get_backends(request: Request) -> BackendManager:
    """Backend manager installed on the application."""
    return request.app.state.backends


def get_backend(
    backends: Annotated[BackendManager, Depends(get_backends)],
    connection: Annotated[str | None, Query(description="Queue connection name")] = None,
) -> Backend:
    try:
        return backends.connection(connection)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from None


Backends = Annotated[BackendManager, Depends(get_backends)]
ConnectionBackend = Annotated[Backend, Depends(get_backend)]
