"""
Asynchronous job queue and worker execution engine.

Pluggable backends with at-least-once delivery, retry/backoff policy,
job chains, batches with atomic progress tracking, and lease-based locks
for single-instance execution.
"""

__version__ = "1.0.0"
