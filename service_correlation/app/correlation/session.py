"""
Evaluation session: everything scoped to one identity's evaluation.

A session is created fresh per identity and passed explicitly through the
traversal. It owns the work counters, the optional account cache and the
bookkeeping of detections produced by the passes. Never share a session
between threads; share the role graph instead.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from shared.errors import EvaluationBudgetExceeded
from shared.logging import get_logger

from .interfaces import AccountSource, RoleGraph, SelectorEvaluator
from .models import Account, CorrelationProfile, Identity, Role, RoleAssignment, RoleDetection
from .state import CorrelationState, Mode

logger = get_logger("correlation.session")


class EvaluationOptions(BaseModel):
    """Options for one evaluation."""
    do_role_assignment: bool = Field(True, description="Run the assignment pass")
    promote_soft_permits: bool = Field(False, description="Turn relevant guided detections into hard permits")
    demote_soft_permits: bool = Field(False, description="Remove system-assigned permits after all passes")
    account_load_strategy: Literal["iterate", "cache"] = Field("iterate", description="Account loading strategy")
    max_roles_considered: Optional[int] = Field(None, description="Role evaluation budget per identity")

    @model_validator(mode="after")
    def _demote_wins(self):
        if self.demote_soft_permits and self.promote_soft_permits:
            self.promote_soft_permits = False
        return self

    @classmethod
    def from_config(cls, config) -> "EvaluationOptions":
        return cls(
            do_role_assignment=config.do_role_assignment,
            promote_soft_permits=config.promote_soft_permits,
            demote_soft_permits=config.demote_soft_permits,
            account_load_strategy=config.account_load_strategy,
            max_roles_considered=config.max_roles_considered,
        )


@dataclass
class EvaluationStats:
    """Work counters for one identity."""
    roles_considered: int = 0
    selectors_evaluated: int = 0
    roles_assigned: int = 0
    roles_detected: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "roles_considered": self.roles_considered,
            "selectors_evaluated": self.selectors_evaluated,
            "roles_assigned": self.roles_assigned,
            "roles_detected": self.roles_detected,
        }


@dataclass(frozen=True)
class TraversalContext:
    """
    Parameters of one traversal pass.

    guided_assignment restricts candidate accounts to the assignment's
    targets; guided_detection does the same for the uncovered pass.
    detectable_roles are the starting points of a guided pass, used to
    decide which detections the assignment claims.
    """
    mode: Mode
    state: CorrelationState
    guided_assignment: Optional[RoleAssignment] = None
    guided_detection: Optional[RoleDetection] = None
    detectable_roles: List[Role] = field(default_factory=list)

    @property
    def detecting(self) -> bool:
        return self.mode == Mode.DETECTING

    @property
    def guided_targets(self):
        if self.guided_assignment is not None:
            return self.guided_assignment.targets
        if self.guided_detection is not None:
            return self.guided_detection.targets
        return []


class EvaluationSession:
    """Scratch state for one identity's evaluation."""

    def __init__(self, identity: Identity, graph: RoleGraph, selector_evaluator: SelectorEvaluator,
                 account_source: AccountSource, options: Optional[EvaluationOptions] = None):
        self.identity = identity
        self.graph = graph
        self.selector_evaluator = selector_evaluator
        self.account_source = account_source
        self.options = options or EvaluationOptions()
        self.stats = EvaluationStats()

        # assignments the detection passes consider current
        self.current_assignments: List[RoleAssignment] = list(identity.role_assignments)
        self._required_or_permitted: Optional[set] = None
        self._account_cache: Dict[str, List[Account]] = {}

        self.assignment_state: Optional[CorrelationState] = None
        self.assignment_states: Dict[str, CorrelationState] = {}
        self.unguided_state: Optional[CorrelationState] = None
        self.uncovered_state: Optional[CorrelationState] = None

        self.new_detections: List[RoleDetection] = []
        self._new_detections_by_name: Dict[str, List[RoleDetection]] = {}

    def count_role_considered(self):
        self.stats.roles_considered += 1
        limit = self.options.max_roles_considered
        if limit is not None and self.stats.roles_considered > limit:
            raise EvaluationBudgetExceeded(limit, {"identity": self.identity.name})

    def count_selector_evaluated(self):
        self.stats.selectors_evaluated += 1

    def load_accounts(self, profile: CorrelationProfile) -> List[Account]:
        """Candidate accounts for a profile, cached per scope with the cache strategy."""
        if self.options.account_load_strategy != "cache":
            return list(self.account_source.get_accounts(self.identity, profile))

        key = profile.scope
        accounts = self._account_cache.get(key)
        if accounts is None:
            accounts = list(self.account_source.get_accounts(self.identity, profile))
            self._account_cache[key] = accounts
        return list(accounts)

    def set_current_assignments(self, assignments: List[RoleAssignment]):
        self.current_assignments = list(assignments)
        self._required_or_permitted = None

    def is_assigned_or_required_or_permitted(self, role: Role) -> bool:
        if self._required_or_permitted is None:
            names = set()
            for assignment in self.current_assignments:
                if assignment.negative:
                    continue
                names.add(assignment.role_name)
                assigned = self.graph.find_role(assignment.role_id, assignment.role_name)
                if assigned is not None:
                    names.update(self.graph.get_required_or_permitted_names(assigned))
            self._required_or_permitted = names
        return role.name in self._required_or_permitted

    def get_previous_detection(self, detection: RoleDetection, guided: bool) -> Optional[RoleDetection]:
        """
        A detection already produced in this session for the same role.

        Unguided passes accept any prior detection of the role; guided
        passes also require the same target accounts.
        """
        for old in self._new_detections_by_name.get(detection.role_name, []):
            if not guided or detection.is_match(old):
                return old
        return None

    def add_new_detection(self, detection: RoleDetection):
        self.new_detections.append(detection)
        self._new_detections_by_name.setdefault(detection.role_name, []).append(detection)

    def all_states(self) -> List[CorrelationState]:
        states = list(self.assignment_states.values())
        if self.unguided_state is not None:
            states.append(self.unguided_state)
        if self.uncovered_state is not None:
            states.append(self.uncovered_state)
        return states

    def merged_state(self) -> CorrelationState:
        """Union of every detection pass, for read-only reporting."""
        merged = CorrelationState()
        for state in self.all_states():
            merged.merge(state)
        return merged

    def describe(self) -> Dict[str, Any]:
        return {
            "identity": self.identity.name,
            "stats": self.stats.to_dict(),
            "guided_passes": len(self.assignment_states),
        }
