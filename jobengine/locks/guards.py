"""
Single-instance execution guards built on a lock manager.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from jobengine.constants import LOCK_PREFIX_ONE_SERVER, LOCK_PREFIX_OVERLAP
from jobengine.exceptions import LockUnavailable
from jobengine.locks.base import LockManager
from jobengine.types.lock import Lock

logger = logging.getLogger(__name__)


def one_server_key(queue: str, task_name: str, slot: int | None = None) -> str:
    key = f"{LOCK_PREFIX_ONE_SERVER}:{queue}:{task_name}"
    return key if slot is None else f"{key}:{slot}"


def overlap_key(signature: str) -> str:
    return f"{LOCK_PREFIX_OVERLAP}:{signature}"


@asynccontextmanager
async def on_one_server(
    locks: LockManager,
    queue: str,
    task_name: str,
    estimated_duration: float,
    slot: int | None = None,
) -> AsyncGenerator[Lock]:
    """
    Run the block on exactly one server per slot.

    The lock is left to expire rather than released, so a server that
    reaches the same slot a little later still skips it.

    Raises:
        LockUnavailable: If another server already claimed the slot.
    """
    key = one_server_key(queue, task_name, slot)
    lock = await locks.acquire(key, estimated_duration)
    if lock is None:
        logger.debug("Skipped, running on another server", extra={"lock_key": key})
        raise LockUnavailable(key)
    yield lock


@asynccontextmanager
async def without_overlapping(
    locks: LockManager,
    signature: str,
    expires_after: float,
) -> AsyncGenerator[Lock]:
    """
    Prevent two runs of the same logical job from overlapping.

    The lock outlives a crashed process only until `expires_after`.

    Raises:
        LockUnavailable: If a run with the same signature is in progress.
    """
    async with locks.hold(overlap_key(signature), expires_after) as lock:
        yield lock
