"""
Job envelope: one unit of dispatched work plus its scheduling metadata.
"""

from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from jobengine.constants import DEFAULT_QUEUE

# Either a fixed delay or a sequence indexed by attempt number
BackoffPolicy = float | list[float] | None


def new_id() -> str:
    """Generate an opaque unique identifier."""
    return uuid4().hex


class Command(BaseModel):
    """
    Serialized command: a type tag resolved through the handler registry
    plus JSON-compatible arguments.
    """

    type: str
    args: dict[str, Any] = Field(default_factory=dict)


class MiddlewareSpec(BaseModel):
    """Reference to a registered middleware factory and its options."""

    name: str
    options: dict[str, Any] = Field(default_factory=dict)


class JobEnvelope(BaseModel):
    """
    Serializable job plus execution metadata.

    Timestamps are unix seconds taken from the owning backend's clock.
    `attempts` counts completed deliveries that ended in a release;
    `exceptions` counts the subset of those that raised.
    """

    id: str = Field(default_factory=new_id)
    connection: str | None = None
    queue: str = DEFAULT_QUEUE
    payload: Command

    attempts: int = Field(default=0, ge=0)
    exceptions: int = Field(default=0, ge=0)
    max_tries: int | None = Field(default=None, ge=1)
    max_exceptions: int | None = Field(default=None, ge=1)
    timeout: float | None = Field(default=None, gt=0)
    backoff: BackoffPolicy = None

    created_at: float = 0.0
    available_at: float = 0.0
    reserved_until: float | None = None

    batch_id: str | None = None
    chain_remainder: list["JobEnvelope"] = Field(default_factory=list)
    chain_catch: str | None = None
    middleware: list[MiddlewareSpec] = Field(default_factory=list)

    @field_validator("backoff")
    @classmethod
    def _backoff_non_negative(cls, value: BackoffPolicy) -> BackoffPolicy:
        if value is None:
            return value
        delays = value if isinstance(value, list) else [value]
        if any(d < 0 for d in delays):
            raise ValueError("backoff delays must be >= 0")
        return value

    @property
    def command_type(self) -> str:
        return self.payload.type

    @property
    def is_reserved(self) -> bool:
        return self.reserved_until is not None

    def is_visible(self, now: float) -> bool:
        """Check whether a worker may reserve this envelope at `now`."""
        if self.available_at > now:
            return False
        return self.reserved_until is None or self.reserved_until <= now

    def signature(self) -> str:
        """Stable identity of the logical job, independent of the envelope id."""
        args = ",".join(f"{k}={self.payload.args[k]!r}" for k in sorted(self.payload.args))
        return f"{self.queue}:{self.payload.type}({args})"

    def __repr__(self) -> str:
        return (
            f"JobEnvelope(id={self.id}, queue={self.queue}, type={self.payload.type}, "
            f"attempts={self.attempts}/{self.max_tries or '*'})"
        )
