"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobengine.constants import (
    METRIC_BACKEND_ERRORS,
    METRIC_BATCH_CALLBACKS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_DISPATCHED,
    METRIC_JOBS_PROCESSED,
    METRIC_LOCKS_ACQUIRED,
    METRIC_LOCKS_CONTENDED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job engine.

    Collects metrics for:
    - Queue depth
    - Dispatched and processed jobs
    - Job execution duration
    - Backend transport errors
    - Lock acquisition and contention
    - Batch callbacks
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of envelopes waiting on a queue",
            ["connection", "queue"],
            registry=self._registry,
        )

        self.jobs_dispatched = Counter(
            METRIC_JOBS_DISPATCHED,
            "Total number of envelopes enqueued",
            ["connection", "queue"],
            registry=self._registry,
        )

        # outcome is one of the EnvelopeState terminal values
        self.jobs_processed = Counter(
            METRIC_JOBS_PROCESSED,
            "Total number of job executions by outcome",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.backend_errors = Counter(
            METRIC_BACKEND_ERRORS,
            "Total number of backend transport failures",
            ["connection"],
            registry=self._registry,
        )

        self.locks_acquired = Counter(
            METRIC_LOCKS_ACQUIRED,
            "Total number of guard locks acquired",
            ["guard"],
            registry=self._registry,
        )

        self.locks_contended = Counter(
            METRIC_LOCKS_CONTENDED,
            "Total number of guard lock attempts that found the lock held",
            ["guard"],
            registry=self._registry,
        )

        self.batch_callbacks = Counter(
            METRIC_BATCH_CALLBACKS,
            "Total number of batch callbacks fired",
            ["callback"],
            registry=self._registry,
        )

    def record_job_dispatched(self, connection: str, queue: str, count: int = 1) -> None:
        self.jobs_dispatched.labels(connection=connection, queue=queue).inc(count)

    def record_job_processed(self, queue: str, outcome: str, duration_seconds: float) -> None:
        """Record the outcome of one execution."""
        self.jobs_processed.labels(queue=queue, outcome=outcome).inc()
        self.job_duration.labels(queue=queue, outcome=outcome).observe(duration_seconds)

    def record_backend_error(self, connection: str) -> None:
        self.backend_errors.labels(connection=connection).inc()

    def record_lock(self, guard: str, acquired: bool) -> None:
        if acquired:
            self.locks_acquired.labels(guard=guard).inc()
        else:
            self.locks_contended.labels(guard=guard).inc()

    def record_batch_callback(self, callback: str) -> None:
        self.batch_callbacks.labels(callback=callback).inc()

    def update_queue_depth(self, connection: str, queue: str, depth: int) -> None:
        """Update queue depth for a queue."""
        self.queue_depth.labels(connection=connection, queue=queue).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """Get the process metrics collector, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
