"""
Shared metrics configuration for the role correlation engine.
"""

import time
import threading
from typing import Dict, Any, Optional
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Info, start_http_server, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for the engine and its service."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # never the global REGISTRY; start_metrics_server serves this one
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common and correlation metrics."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._metrics["business_events_total"] = Counter(
            "business_events_total",
            "Total business events",
            ["event_type", "service"],
            registry=self.registry
        )

        self._setup_correlation_metrics()

    def _setup_correlation_metrics(self):
        """Set up correlation-specific metrics."""
        self._metrics["identities_evaluated_total"] = Counter(
            "identities_evaluated_total",
            "Total identities evaluated",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["roles_considered_total"] = Counter(
            "roles_considered_total",
            "Total roles considered during hierarchy traversal",
            registry=self.registry
        )

        self._metrics["selectors_evaluated_total"] = Counter(
            "selectors_evaluated_total",
            "Total selectors and profile comparisons evaluated",
            registry=self.registry
        )

        self._metrics["role_changes_total"] = Counter(
            "role_changes_total",
            "Total identities whose assigned roles, detected roles or exceptions changed",
            ["kind"],
            registry=self.registry
        )

        self._metrics["evaluation_duration_seconds"] = Histogram(
            "evaluation_duration_seconds",
            "Identity evaluation duration in seconds",
            ["operation"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        service_name = service or self.service_name
        self._metrics["business_events_total"].labels(event_type=event_type, service=service_name).inc()

    def record_evaluation(self, outcome: str, roles_considered: int = 0, selectors_evaluated: int = 0):
        """Record the outcome and work counters of one identity evaluation."""
        with self._lock:
            self._metrics["identities_evaluated_total"].labels(outcome=outcome).inc()
            if roles_considered:
                self._metrics["roles_considered_total"].inc(roles_considered)
            if selectors_evaluated:
                self._metrics["selectors_evaluated_total"].inc(selectors_evaluated)

    def record_role_change(self, kind: str):
        """Record that an identity's assigned/detected roles or exceptions changed."""
        self._metrics["role_changes_total"].labels(kind=kind).inc()

    @contextmanager
    def time_operation(self, operation_name: str):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            self._metrics["evaluation_duration_seconds"].labels(operation=operation_name).observe(duration)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
