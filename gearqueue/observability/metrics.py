"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    start_http_server,
)

from gearqueue.constants import (
    METRIC_CONNECTION_FAILURES,
    METRIC_JOB_DURATION,
    METRIC_JOBS_EXECUTED,
    METRIC_JOBS_SUBMITTED,
    METRIC_TASKS_FINISHED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for clients and workers.

    Collects metrics for:
    - Job submissions (client)
    - Task outcomes seen by the client
    - Jobs executed by the worker and their duration
    - Connection failures per server
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted to a job server",
            ["function", "job_type"],
            registry=self._registry,
        )

        self.tasks_finished = Counter(
            METRIC_TASKS_FINISHED,
            "Total number of submitted tasks that reported an outcome",
            ["function", "status"],
            registry=self._registry,
        )

        self.jobs_executed = Counter(
            METRIC_JOBS_EXECUTED,
            "Total number of jobs executed by workers",
            ["function", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["function", "status"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.connection_failures = Counter(
            METRIC_CONNECTION_FAILURES,
            "Total number of failed job server connections",
            ["server", "role"],
            registry=self._registry,
        )

    def record_job_submitted(self, function: str, job_type: str) -> None:
        """Record a job submission."""
        self.jobs_submitted.labels(function=function, job_type=job_type).inc()

    def record_task_finished(self, function: str, status: str) -> None:
        """Record a task outcome received by the client."""
        self.tasks_finished.labels(function=function, status=status).inc()

    def record_job_executed(
        self,
        function: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job run by a worker."""
        self.jobs_executed.labels(function=function, status=status).inc()
        self.job_duration.labels(function=function, status=status).observe(
            duration_seconds
        )

    def record_connection_failure(self, server: str, role: str) -> None:
        """Record a failed connection attempt or a dropped connection."""
        self.connection_failures.labels(server=server, role=role).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics(port: int | None = None) -> "MetricsCollector":
    """
    Set up and return the metrics collector.

    Args:
        port: If given, serve the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
