"""
Retry delay computation.
"""

from jobengine.types.envelope import BackoffPolicy


def compute_backoff(backoff: BackoffPolicy, attempts: int) -> float:
    """
    Delay before the next delivery of a job that has been released `attempts` times.

    A sequence is indexed by attempts and clamps at its last element, so
    [1, 5, 10] yields 1, 5, 10, 10, ... A scalar is used for every retry.
    """
    if backoff is None:
        return 0.0
    if isinstance(backoff, list):
        if not backoff:
            return 0.0
        return float(backoff[min(attempts, len(backoff) - 1)])
    return float(backoff)
