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

from jobrelay.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASES_REAPED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth by status
    - Job enqueues, claims and outcomes
    - Job execution duration
    - Leases recovered by the reaper
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
            "Number of jobs by status",
            ["status"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by workers",
            ["worker_id"],
            registry=self._registry,
        )

        # Outcome is completed, retried, failed or cancelled
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job executions by outcome",
            ["job_type", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_type", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.leases_reaped = Counter(
            METRIC_LEASES_REAPED,
            "Total number of expired leases recovered",
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str) -> None:
        self.jobs_enqueued.labels(job_type=job_type).inc()

    def record_job_claimed(self, worker_id: str) -> None:
        self.jobs_claimed.labels(worker_id=worker_id).inc()

    def record_job_finished(
        self,
        job_type: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one execution."""
        self.jobs_finished.labels(job_type=job_type, outcome=outcome).inc()
        self.job_duration.labels(job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )

    def record_leases_reaped(self, count: int) -> None:
        if count:
            self.leases_reaped.inc(count)

    def update_queue_depth(self, counts: dict[str, int]) -> None:
        """Update the per-status gauge from a status -> count mapping."""
        for status, count in counts.items():
            self.queue_depth.labels(status=status).set(count)

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
    """Get the process-wide metrics collector, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
