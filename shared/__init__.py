"""
Shared utilities for the role correlation engine.

This package aggregates common building blocks consumed by the engine
and the batch service:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with identity/assignment correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses
- observability: One-stop setup of logging, tracing and metrics

Engine logic must not live here. Do not import from service_* packages
into shared/.
"""
