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

from buildqueue.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_BUILD_DURATION,
    METRIC_ENTITLEMENTS_APPLIED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_EXHAUSTED,
    METRIC_JOBS_REQUEUED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_CONFLICTS,
    METRIC_LEASE_RECLAIMED,
    METRIC_PAYMENT_TRANSITIONS,
    METRIC_PAYMENTS_RECONCILED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the build queue.

    Collects metrics for:
    - Job enqueues, completions and requeues
    - Build execution duration
    - Lease acquisition, stale reclaim and token conflicts
    - Jobs stuck with an exhausted retry budget
    - Payment settlement and entitlement grants
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of build jobs enqueued",
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of build jobs completed",
            ["status"],
            registry=self._registry,
        )

        self.jobs_requeued = Counter(
            METRIC_JOBS_REQUEUED,
            "Total number of build jobs returned to the queue",
            registry=self._registry,
        )

        self.jobs_exhausted = Gauge(
            METRIC_JOBS_EXHAUSTED,
            "Non-terminal build jobs whose retry budget is spent",
            registry=self._registry,
        )

        self.build_duration = Histogram(
            METRIC_BUILD_DURATION,
            "Build execution duration in seconds",
            ["status"],
            buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.lease_reclaimed = Counter(
            METRIC_LEASE_RECLAIMED,
            "Total number of stale leases taken over",
            registry=self._registry,
        )

        # Completions and requeues rejected because the token was superseded
        self.lease_conflicts = Counter(
            METRIC_LEASE_CONFLICTS,
            "Total number of lease operations without the current token",
            ["operation"],
            registry=self._registry,
        )

        self.payment_transitions = Counter(
            METRIC_PAYMENT_TRANSITIONS,
            "Total number of payment status transition attempts",
            ["status", "outcome"],
            registry=self._registry,
        )

        self.entitlements_applied = Counter(
            METRIC_ENTITLEMENTS_APPLIED,
            "Total number of payments whose entitlements were granted",
            ["plan"],
            registry=self._registry,
        )

        self.payments_reconciled = Counter(
            METRIC_PAYMENTS_RECONCILED,
            "Total number of pending payments recovered from the provider",
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_job_enqueued(self) -> None:
        """Record a build job enqueue."""
        self.jobs_enqueued.inc()

    def record_job_completed(self, status: str, duration_seconds: float) -> None:
        """Record a build job completion."""
        self.jobs_completed.labels(status=status).inc()
        self.build_duration.labels(status=status).observe(duration_seconds)

    def record_job_requeued(self) -> None:
        self.jobs_requeued.inc()

    def record_lease_acquired(self, worker_id: str) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker_id=worker_id).inc()

    def record_lease_reclaimed(self) -> None:
        self.lease_reclaimed.inc()

    def record_lease_conflict(self, operation: str) -> None:
        """Record a complete/requeue/heartbeat rejected for a stale token."""
        self.lease_conflicts.labels(operation=operation).inc()

    def update_exhausted_jobs(self, count: int) -> None:
        self.jobs_exhausted.set(count)

    def record_payment_transition(self, status: str, outcome: str) -> None:
        """Record a payment status transition attempt and its outcome."""
        self.payment_transitions.labels(status=status, outcome=outcome).inc()

    def record_entitlements_applied(self, plan: str) -> None:
        self.entitlements_applied.labels(plan=plan).inc()

    def record_payment_reconciled(self) -> None:
        self.payments_reconciled.inc()

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

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
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
