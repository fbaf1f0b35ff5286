"""
Observability setup for the role correlation engine.
Integrates logging, metrics, and tracing.
"""

from typing import Optional

from prometheus_client import CollectorRegistry

from .logging import configure_logging, get_logger, set_identity_context, clear_context
from .metrics import get_metrics_collector
from .tracing import configure_tracing, add_span_attributes, add_span_event


class ObservabilityManager:
    """Centralized observability manager."""

    def __init__(self, service_name: str, log_level: str = "info",
                 otel_exporter: Optional[str] = None, enable_tracing: bool = False,
                 enable_console: bool = False, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.log_level = log_level
        self.otel_exporter = otel_exporter
        self.enable_tracing = enable_tracing
        self.enable_console = enable_console

        self._setup_logging()
        self._setup_tracing()
        self.metrics = get_metrics_collector(service_name, registry)

        self.logger = get_logger(f"{service_name}.observability")

        self.logger.info("Observability initialized",
                         service=service_name,
                         log_level=log_level,
                         tracing_enabled=enable_tracing)

    def _setup_logging(self):
        """Set up structured logging."""
        configure_logging(self.service_name, self.log_level)

    def _setup_tracing(self):
        """Set up distributed tracing."""
        if self.enable_tracing or self.enable_console:
            configure_tracing(
                self.service_name,
                self.otel_exporter if self.enable_tracing else None,
                self.enable_console
            )

    def trace_identity(self, identity_name: Optional[str]):
        """Bind the identity being evaluated to logs and the current span."""
        set_identity_context(identity_name)
        add_span_attributes(identity=identity_name)

    def clear_identity_context(self):
        """Clear identity context."""
        clear_context()

    def log_error(self, error_type: str, error_message: str, **kwargs):
        """Log error with full context."""
        self.logger.error(
            "Error occurred",
            error_type=error_type,
            error_message=error_message,
            **kwargs
        )

        self.metrics.record_error(error_type)

        add_span_event("error",
                       error_type=error_type,
                       error_message=error_message)

    def log_business_event(self, event_type: str, **kwargs):
        """Log business event with full context."""
        self.logger.info(
            "Business event",
            event_type=event_type,
            **kwargs
        )

        self.metrics.record_business_event(event_type)

        add_span_event("business_event", event_type=event_type)


def get_observability_manager(service_name: str, **kwargs) -> ObservabilityManager:
    """Get an observability manager for a service."""
    return ObservabilityManager(service_name, **kwargs)
