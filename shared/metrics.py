"""
Shared metrics configuration for the risk index access layer.
"""

from typing import Dict, Any, Optional
import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Centralized metrics collector for the index gateway.

    Every collector owns its registry so several gateways (or test cases)
    can live in one process without duplicate-registration errors.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up gateway metrics."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # Cache-aside
        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["cache_type"],
            registry=self.registry
        )
        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["cache_type"],
            registry=self.registry
        )
        self._metrics["stale_reads_total"] = Counter(
            "stale_reads_total",
            "Stale cache values served while the circuit was open",
            ["result"],
            registry=self.registry
        )

        # Upstream index
        self._metrics["index_requests_total"] = Counter(
            "index_requests_total",
            "Index executions by outcome",
            ["outcome"],
            registry=self.registry
        )
        self._metrics["index_request_duration_seconds"] = Histogram(
            "index_request_duration_seconds",
            "Index execution duration in seconds",
            ["outcome"],
            registry=self.registry
        )
        self._metrics["coalesced_requests_total"] = Counter(
            "coalesced_requests_total",
            "Requests satisfied by an in-flight or memoized execution",
            ["source"],
            registry=self.registry
        )

        # Scheduler
        self._metrics["queue_depth"] = Gauge(
            "queue_depth",
            "Requests waiting for a concurrency slot",
            registry=self.registry
        )
        self._metrics["active_requests"] = Gauge(
            "active_requests",
            "Requests currently executing against the index",
            registry=self.registry
        )
        self._metrics["circuit_open"] = Gauge(
            "circuit_open",
            "1 when the index circuit breaker is open",
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)

    def sample(self, metric_name: str, **labels) -> Optional[float]:
        """Read back the current value of a sample from the registry."""
        return self.registry.get_sample_value(metric_name, labels or None)

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
