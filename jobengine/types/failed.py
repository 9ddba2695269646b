"""
Failed job record.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from jobengine.types.envelope import Command, JobEnvelope, new_id


class FailedJob(BaseModel):
    """
    Terminal record of an envelope whose attempts or exceptions ran out.

    Never re-enters a backend on its own; an operator retries or purges it.
    """

    id: str = Field(default_factory=new_id)
    original_id: str
    connection: str | None = None
    queue: str
    payload: Command
    exception: str
    failed_at: datetime
    envelope: JobEnvelope

    def to_record(self) -> dict:
        """Minimal persistence format."""
        return {
            "id": self.original_id,
            "queue": self.queue,
            "payload": self.payload.model_dump(mode="json"),
            "exception": self.exception,
            "failed_at": self.failed_at.isoformat(),
        }
