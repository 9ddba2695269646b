"""
Batch record and counter snapshots.
"""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from jobengine.constants import BatchCallback


@dataclass(frozen=True)
class BatchCounts:
    """Counters returned by one atomic batch update."""

    total_jobs: int
    pending_jobs: int
    failed_jobs: int
    allow_failures: bool = False

    @property
    def finished(self) -> bool:
        return self.pending_jobs == 0


class Batch(BaseModel):
    """
    Aggregate state of a group of jobs sharing a batch id.

    Counters are only ever changed through a backend's atomic batch
    primitives; this model is a read snapshot.
    """

    id: str
    name: str
    queue: str | None = None
    connection: str | None = None
    total_jobs: int = Field(ge=0)
    pending_jobs: int = Field(ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    failed_job_ids: list[str] = Field(default_factory=list)
    allow_failures: bool = False
    callbacks: dict[BatchCallback, str] = Field(default_factory=dict)
    fired: list[BatchCallback] = Field(default_factory=list)
    created_at: datetime
    cancelled_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def finished(self) -> bool:
        return self.pending_jobs == 0

    @property
    def processed_jobs(self) -> int:
        return self.total_jobs - self.pending_jobs

    @property
    def has_failures(self) -> bool:
        return self.failed_jobs > 0

    def progress(self) -> float:
        """Fraction of member jobs that are no longer pending."""
        if self.total_jobs == 0:
            return 1.0
        return self.processed_jobs / self.total_jobs
