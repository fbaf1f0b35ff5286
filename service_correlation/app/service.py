"""
Correlation service: batch evaluation of identities.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from prometheus_client import CollectorRegistry

from shared.config import ServiceConfig, get_config
from shared.errors import CorrelationError, ErrorResponse, RoleGraphValidationError
from shared.logging import clear_context, get_logger, set_request_id
from shared.observability import get_observability_manager
from shared.tracing import trace_operation

from .correlation.accounts import IdentityAccountSource
from .correlation.correlator import CorrelationResult, Correlator
from .correlation.graph import load_role_graph
from .correlation.interfaces import AccountSource, RoleGraph, SelectorEvaluator
from .correlation.models import Identity
from .correlation.selectors import RuleSelectorEvaluator
from .correlation.session import EvaluationOptions


@dataclass
class BatchResult:
    """Per-identity outcomes of a batch; failures do not stop other identities."""
    results: Dict[str, CorrelationResult] = field(default_factory=dict)
    errors: Dict[str, ErrorResponse] = field(default_factory=dict)
    request_id: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)


class CorrelationService:
    """Evaluates identities against a shared, read-only role graph."""

    def __init__(self, role_graph: Optional[RoleGraph] = None,
                 selector_evaluator: Optional[SelectorEvaluator] = None,
                 account_source: Optional[AccountSource] = None,
                 config: Optional[ServiceConfig] = None,
                 registry: Optional[CollectorRegistry] = None):
        self.config = config or get_config("correlation")
        self.logger = get_logger("correlation.service")

        self.observability = get_observability_manager(
            self.config.service_name,
            log_level=self.config.log_level,
            otel_exporter=self.config.otel_exporter,
            enable_tracing=self.config.enable_tracing,
            enable_console=self.config.enable_console_tracing,
            registry=registry
        )

        if role_graph is None:
            if not self.config.role_graph_file:
                raise RoleGraphValidationError("No role graph given and no role graph file configured")
            role_graph = load_role_graph(self.config.role_graph_file)

        self.options = EvaluationOptions.from_config(self.config)
        self.selector_evaluator = selector_evaluator or RuleSelectorEvaluator()
        self.account_source = account_source or IdentityAccountSource()

        self._lock = threading.Lock()
        self._correlator = Correlator(role_graph, self.selector_evaluator, self.account_source, self.options)
        self._stats = {
            "identities_evaluated": 0,
            "identities_failed": 0,
            "assigned_role_changes": 0,
            "detected_role_changes": 0,
            "exception_changes": 0,
            "graph_refreshes": 0,
        }

        if self.config.metrics_port:
            self.observability.metrics.start_metrics_server(self.config.metrics_port)

        self.logger.info("Correlation service initialized",
                         roles=role_graph.size(),
                         max_workers=self.config.max_workers,
                         options=self.options.model_dump())

    @property
    def correlator(self) -> Correlator:
        with self._lock:
            return self._correlator

    def refresh_graph(self, role_graph: RoleGraph):
        """Swap the role graph; evaluations already running keep the old one."""
        with self._lock:
            self._correlator = Correlator(role_graph, self.selector_evaluator, self.account_source, self.options)
            self._stats["graph_refreshes"] += 1
        self.observability.log_business_event("role_graph_refreshed", roles=role_graph.size())

    def evaluate_identity(self, identity: Identity) -> CorrelationResult:
        """Evaluate one identity with a fresh session."""
        correlator = self.correlator
        metrics = self.observability.metrics

        with trace_operation("correlation.service.evaluate_identity", identity=identity.name):
            self.observability.trace_identity(identity.name)
            try:
                with metrics.time_operation("evaluate"):
                    result = correlator.evaluate(identity)
            except CorrelationError as e:
                self._record_failure()
                self.observability.log_error(e.code, e.message, identity=identity.name, details=e.details)
                raise
            except Exception as e:
                self._record_failure()
                self.observability.log_error(type(e).__name__, str(e), identity=identity.name)
                raise
            finally:
                self.observability.clear_identity_context()

        self._record_result(result)
        return result

    def evaluate_batch(self, identities: Iterable[Identity]) -> BatchResult:
        """Evaluate identities in parallel; each failure is collected per identity."""
        identities = list(identities)
        batch = BatchResult(request_id=set_request_id())

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = {executor.submit(self._evaluate_in_batch, identity, batch.request_id): identity
                       for identity in identities}
            for future in as_completed(futures):
                identity = futures[future]
                try:
                    batch.results[identity.name] = future.result()
                except CorrelationError as e:
                    batch.errors[identity.name] = e.to_response()
                except Exception as e:
                    batch.errors[identity.name] = ErrorResponse(code="INTERNAL_ERROR", message=str(e))

        self.logger.info("Batch evaluated", identities=len(identities),
                         succeeded=batch.succeeded, failed=batch.failed)
        clear_context()
        return batch

    def _evaluate_in_batch(self, identity: Identity, request_id: str) -> CorrelationResult:
        # worker threads do not inherit the caller's context variables
        set_request_id(request_id)
        return self.evaluate_identity(identity)

    def _record_failure(self):
        self.observability.metrics.record_evaluation("error")
        with self._lock:
            self._stats["identities_failed"] += 1

    def _record_result(self, result: CorrelationResult):
        metrics = self.observability.metrics
        metrics.record_evaluation("success", result.stats.roles_considered, result.stats.selectors_evaluated)

        with self._lock:
            self._stats["identities_evaluated"] += 1
            if result.assigned_roles_changed:
                self._stats["assigned_role_changes"] += 1
            if result.detected_roles_changed:
                self._stats["detected_role_changes"] += 1
            if result.exceptions_changed:
                self._stats["exception_changes"] += 1

        if result.assigned_roles_changed:
            metrics.record_role_change("assigned")
        if result.detected_roles_changed:
            metrics.record_role_change("detected")
        if result.exceptions_changed:
            metrics.record_role_change("exceptions")

    def get_statistics(self) -> Dict[str, Any]:
        """Aggregate counters since the service started."""
        with self._lock:
            stats = dict(self._stats)
            stats["roles"] = self._correlator.graph.size()
        return stats
