"""
Lock record for lease-based mutual exclusion.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Lock:
    """
    A held lease on a key.

    `owner_token` proves ownership on release; `expires_at` is unix seconds.
    """

    key: str
    owner_token: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Check if the lease has expired."""
        return now >= self.expires_at

    def time_remaining(self, now: float) -> float:
        """Get remaining time on the lease in seconds."""
        return max(0.0, self.expires_at - now)
