"""
Exception taxonomy for the queue engine.
"""


class JobEngineError(Exception):
    """Base class for all engine errors."""


class BackendUnavailable(JobEngineError):
    """
    The transport behind a backend or lock manager could not be reached.

    Never counted against an envelope's attempts: the job was not delivered.
    """


class HandlerException(JobEngineError):
    """Application code raised while handling a job."""


class TimeoutExceeded(HandlerException):
    """Execution ran past the envelope timeout and was aborted."""

    def __init__(self, envelope_id: str, timeout: float):
        super().__init__(f"Job {envelope_id} exceeded timeout of {timeout:g}s")
        self.envelope_id = envelope_id
        self.timeout = timeout


class UnknownCommand(HandlerException):
    """No handler is registered for a command type."""

    def __init__(self, command_type: str):
        super().__init__(f"No handler registered for command type: {command_type}")
        self.command_type = command_type


class LockUnavailable(JobEngineError):
    """A lock is held elsewhere. The caller skips this cycle."""

    def __init__(self, key: str):
        super().__init__(f"Lock is held: {key}")
        self.key = key


class TerminalFailure(JobEngineError):
    """Attempts or exceptions are exhausted; the envelope moved to the failed store."""

    def __init__(self, envelope_id: str, reason: str):
        super().__init__(f"Job {envelope_id} failed permanently: {reason}")
        self.envelope_id = envelope_id
        self.reason = reason


class FailedJobNotFound(JobEngineError):
    """No failed job with the given id exists."""

    def __init__(self, failed_id: str):
        super().__init__(f"Failed job not found: {failed_id}")
        self.failed_id = failed_id
