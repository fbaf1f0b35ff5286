"""
Shared error handling for the role correlation engine.
"""

from typing import Dict, Any, List, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class CorrelationError(Exception):
    """Base exception for the correlation engine."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class MissingReferenceError(CorrelationError):
    """A role or account referenced by stale state no longer exists."""

    def __init__(self, kind: str, reference: str, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.update({"kind": kind, "reference": reference})
        super().__init__("MISSING_REFERENCE", f"Unresolved {kind}: {reference}", details)


class SelectorEvaluationError(CorrelationError):
    """The selector evaluator failed; aborts the current identity."""

    def __init__(self, role_name: str, message: str = "Selector evaluation failed",
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details["role"] = role_name
        super().__init__("SELECTOR_EVALUATION_ERROR", f"{role_name}: {message}", details)


class CyclicRoleGraphError(CorrelationError):
    """The role hierarchy contains a cycle."""

    def __init__(self, path: List[str], details: Optional[Dict[str, Any]] = None):
        self.path = list(path)
        details = dict(details or {})
        details["path"] = self.path
        super().__init__("CYCLIC_ROLE_GRAPH", "Cyclic role graph: " + " -> ".join(self.path), details)


class EvaluationBudgetExceeded(CorrelationError):
    """More roles were considered than the configured budget allows."""

    def __init__(self, limit: int, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details["limit"] = limit
        super().__init__("EVALUATION_BUDGET_EXCEEDED",
                         f"More than {limit} roles considered", details)


class InvalidAssignmentError(CorrelationError):
    """A role assignment cannot be processed as given."""

    def __init__(self, message: str = "Invalid role assignment", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_ASSIGNMENT", message, details)


class AnalysisStateError(CorrelationError):
    """Results were requested from an analysis that did not produce them."""

    def __init__(self, message: str = "No analysis state", details: Optional[Dict[str, Any]] = None):
        super().__init__("ANALYSIS_STATE_ERROR", message, details)


class RoleGraphValidationError(CorrelationError):
    """A role graph document is malformed."""

    def __init__(self, message: str = "Role graph validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("ROLE_GRAPH_VALIDATION_ERROR", message, details)
