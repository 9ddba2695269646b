"""
Database module.
Contains database connection management and table models.
"""

from jobengine.db.connection import (
    close_db,
    get_engine,
    get_test_engine,
    init_db,
    make_session_factory,
    session_scope,
)
from jobengine.db.models import (
    Base,
    BatchFailure,
    BatchRecord,
    CacheLock,
    FailedJobRecord,
    QueuedJob,
)

__all__ = [
    "get_engine",
    "get_test_engine",
    "init_db",
    "close_db",
    "make_session_factory",
    "session_scope",
    "Base",
    "QueuedJob",
    "FailedJobRecord",
    "BatchRecord",
    "BatchFailure",
    "CacheLock",
]
