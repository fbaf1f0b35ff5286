"""
Role correlator: assignment and detection passes for one identity.

A full evaluation runs, in order:

1. the assignment pass over least-specific assignable roles, reconciled
   with the identity's current assignments (when role assignment is on);
2. guided detection once per non-negative assignment, restricted to the
   assignment's target accounts;
3. unguided detection over least-specific detectable roles;
4. uncovered detection for prior detections no assignment claims;
5. soft-permit demotion, detection reconciliation and exceptions.

Every pass gets its own CorrelationState. All per-identity scratch data
lives in an EvaluationSession, so one Correlator may serve several
threads as long as each evaluation has its own session.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from shared.errors import AnalysisStateError, CyclicRoleGraphError, InvalidAssignmentError
from shared.logging import get_logger, set_assignment_context
from shared.tracing import add_span_attributes, trace_operation

from .accounts import IdentityAccountSource
from .entitlements import EntitlementCollection
from .interfaces import AccountSource, RoleGraph, SelectorEvaluator
from .matcher import HierarchyMatcher
from .models import Account, Identity, Role, RoleAssignment, RoleDetection, RoleTarget, Source
from .reconciler import (
    compute_exceptions,
    demote_soft_permits,
    fix_role_assignments,
    new_id,
    reconcile_assignment_detections,
    reconcile_new_detections,
    reconcile_role_assignments,
    remove_covered_exceptions,
)
from .session import EvaluationOptions, EvaluationSession, EvaluationStats, TraversalContext
from .state import CorrelationState, Mode

logger = get_logger("correlation.correlator")


def collect_matched_entitlements(graph: RoleGraph, state: CorrelationState, role: Role,
                                 collect_supers: bool, into: Optional[EntitlementCollection] = None,
                                 path: Tuple[str, ...] = ()) -> EntitlementCollection:
    """Entitlements a pass matched for a role, optionally with those of its ancestors."""
    collection = into if into is not None else EntitlementCollection()
    if role.name in path:
        raise CyclicRoleGraphError(list(path) + [role.name])

    matches = state.get_matched_entitlements(role)
    if matches is None:
        # roles without profiles can be detected through their children
        logger.debug("No matched entitlements for detected role", role=role.name)
    else:
        collection.add(matches)

    if collect_supers:
        for parent in graph.get_parents(role):
            collect_matched_entitlements(graph, state, parent, True, collection, path + (role.name,))
    return collection


def get_detectable_supers(graph: RoleGraph, role: Role, path: Tuple[str, ...] = ()) -> List[Role]:
    """All detectable ancestors of a role."""
    detectables: List[Role] = []
    for parent in graph.get_parents(role):
        if parent.name in path:
            raise CyclicRoleGraphError(list(path) + [parent.name])
        if parent.detectable:
            detectables.append(parent)
        detectables.extend(get_detectable_supers(graph, parent, path + (role.name,)))
    return detectables


def get_detectables(graph: RoleGraph, state: Optional[CorrelationState], flattened: bool) -> List[Role]:
    """Detected roles of a pass; unflattened adds their detectable ancestors."""
    roles: List[Role] = list(state.detected_roles) if state is not None else []
    if not flattened:
        seen = {r.name for r in roles}
        for role in list(roles):
            for sup in get_detectable_supers(graph, role):
                if sup.name not in seen:
                    seen.add(sup.name)
                    roles.append(sup)
    return roles


def _distinct_names(names: Iterable[str]) -> List[str]:
    distinct: List[str] = []
    for name in names:
        if name not in distinct:
            distinct.append(name)
    return distinct


class CorrelationAnalysis:
    """Read-only view over the pass states of one session."""

    def __init__(self, session: EvaluationSession, generated_ids: Optional[Dict[str, str]] = None):
        self.session = session
        self.graph = session.graph
        # role name -> id given to an analysed assignment that had none
        self.generated_ids = dict(generated_ids or {})
        self._merged: Optional[CorrelationState] = None

    @property
    def merged_state(self) -> CorrelationState:
        if self._merged is None:
            self._merged = self.session.merged_state()
        return self._merged

    def get_detected_roles(self) -> List[Role]:
        return self.merged_state.detected_roles

    def get_auto_assigned_roles(self) -> List[Role]:
        state = self.session.assignment_state
        return state.assigned_roles if state is not None else []

    def get_entitlement_mappings(self, flattened: bool = True) -> Dict[str, EntitlementCollection]:
        """
        Role name to the entitlements that explain it.

        Flattened mappings hold the detected leaf roles with their
        inherited entitlements; unflattened mappings hold every detected
        role and its detectable ancestors with their own entitlements only.
        """
        state = self.merged_state
        return {
            role.name: collect_matched_entitlements(self.graph, state, role, flattened)
            for role in get_detectables(self.graph, state, flattened)
        }

    def _state_for(self, assignment: Optional[RoleAssignment]) -> CorrelationState:
        if assignment is None:
            if self.session.uncovered_state is None:
                raise AnalysisStateError("No uncovered analysis state")
            return self.session.uncovered_state

        assignment_id = assignment.assignment_id or self.generated_ids.get(assignment.role_name)
        state = self.session.assignment_states.get(assignment_id)
        if state is None:
            raise AnalysisStateError("No analysis state for assignment",
                                     {"assignment_id": assignment.assignment_id})
        return state

    def get_contributing_entitlements(self, assignment: Optional[RoleAssignment], role_name: str,
                                      flattened: bool = True) -> Optional[EntitlementCollection]:
        """
        Entitlements contributing to a detected role within one assignment,
        or within the uncovered pass when no assignment is given.
        """
        role = self.graph.get_role_by_name(role_name)
        if role is None:
            logger.error("Unresolved role for contributing entitlements", role=role_name)
            return None
        return collect_matched_entitlements(self.graph, self._state_for(assignment), role, flattened)

    def get_contributing_entitlements_for_assignment(self, assignment: Optional[RoleAssignment],
                                                     flattened: bool = True) -> Dict[str, Optional[EntitlementCollection]]:
        """Contributing entitlements for every role an assignment requires or permits."""
        names: List[str] = []
        if assignment is not None:
            role = self.graph.find_role(assignment.role_id, assignment.role_name)
            if role is not None:
                names.extend(role.requirements)
                names.extend(role.permits)
        else:
            names.extend(d.role_name for d in self.session.identity.role_detections
                         if not d.has_assignment_ids())

        return {name: self.get_contributing_entitlements(assignment, name, flattened)
                for name in _distinct_names(names)}


@dataclass
class CorrelationResult:
    """Outcome of evaluating one identity."""
    identity_name: str
    assignments: List[RoleAssignment]
    detections: List[RoleDetection]
    exceptions: Optional[EntitlementCollection]
    stats: EvaluationStats
    analysis: CorrelationAnalysis
    assigned_roles_changed: bool = False
    detected_roles_changed: bool = False
    exceptions_changed: bool = False
    accounts_without_entitlements: List[Account] = field(default_factory=list)

    @property
    def assigned_role_names(self) -> List[str]:
        return _distinct_names(a.role_name for a in self.assignments if not a.negative)

    @property
    def detected_role_names(self) -> List[str]:
        return _distinct_names(d.role_name for d in self.detections)

    def get_entitlement_mappings(self, flattened: bool = True) -> Dict[str, EntitlementCollection]:
        return self.analysis.get_entitlement_mappings(flattened)

    def to_summary(self) -> Dict[str, Any]:
        return {
            "identity": self.identity_name,
            "assigned_roles": self.assigned_role_names,
            "detected_roles": self.detected_role_names,
            "exceptions": self.exceptions.to_dict() if self.exceptions is not None else None,
            "assigned_roles_changed": self.assigned_roles_changed,
            "detected_roles_changed": self.detected_roles_changed,
            "exceptions_changed": self.exceptions_changed,
            "stats": self.stats.to_dict(),
        }


class Correlator:
    """Role assignment and detection engine."""

    def __init__(self, graph: RoleGraph, selector_evaluator: SelectorEvaluator,
                 account_source: Optional[AccountSource] = None,
                 options: Optional[EvaluationOptions] = None):
        self.graph = graph
        self.selector_evaluator = selector_evaluator
        self.account_source = account_source or IdentityAccountSource()
        self.options = options or EvaluationOptions()

    def with_candidates(self, candidates: Iterable[Role]) -> "Correlator":
        """A correlator over the graph with hypothetical roles overlaid."""
        return Correlator(self.graph.with_candidates(candidates), self.selector_evaluator,
                          self.account_source, self.options)

    def new_session(self, identity: Identity, options: Optional[EvaluationOptions] = None) -> EvaluationSession:
        return EvaluationSession(identity, self.graph, self.selector_evaluator,
                                 self.account_source, options or self.options)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def run_assignment_pass(self, session: EvaluationSession, roots: List[Role],
                            birthright_only: bool = False) -> List[RoleAssignment]:
        """Evaluate selectors top-down from the roots and reconcile with current assignments."""
        state = CorrelationState()
        session.assignment_state = state
        context = TraversalContext(Mode.ASSIGNING, state)
        matcher = HierarchyMatcher(session, context)

        logger.info("Checking assignable roles", count=len(roots))
        for role in roots:
            matcher.evaluate_top_down(role, role)
        logger.info("Assigned roles", roles=[r.name for r in state.assigned_roles])

        assignments = reconcile_role_assignments(self.graph, session.identity.role_assignments,
                                                 state.assigned_roles, birthright_only)
        return fix_role_assignments(self.graph, assignments)

    def run_guided_detection(self, session: EvaluationSession,
                             assignment: RoleAssignment) -> Optional[TraversalContext]:
        """Detect the roles an assignment makes detectable, on its target accounts."""
        if assignment.negative:
            logger.info("Skipping detection for negative assignment", assignment_id=assignment.assignment_id)
            return None

        state = CorrelationState(assignment.assignment_id)
        key = assignment.assignment_id or new_id()
        session.assignment_states[key] = state

        detectables = self.graph.get_detectable_roles_for_assignment(assignment)
        context = TraversalContext(Mode.DETECTING, state, guided_assignment=assignment,
                                   detectable_roles=detectables)
        matcher = HierarchyMatcher(session, context)

        logger.info("Checking detectable roles", count=len(detectables), assignment_id=assignment.assignment_id)
        set_assignment_context(assignment.assignment_id)
        try:
            for role in detectables:
                matcher.evaluate_top_down(role, role)
        finally:
            set_assignment_context(None)

        self.save_role_detections(session, context)
        return context

    def run_unguided_detection(self, session: EvaluationSession) -> CorrelationState:
        """Detect from every least-specific detectable role on all accounts."""
        state = CorrelationState()
        session.unguided_state = state
        context = TraversalContext(Mode.DETECTING, state)
        matcher = HierarchyMatcher(session, context)

        roots = self.graph.get_detectable_roles()
        logger.info("Checking detectable roles", count=len(roots))
        for role in roots:
            matcher.evaluate_top_down(role, None)

        self.save_role_detections(session, context)
        return state

    def run_uncovered_detection(self, session: EvaluationSession,
                                remaining_assignment_ids: Optional[Set[str]] = None,
                                redetecting: bool = False) -> CorrelationState:
        """
        Re-detect prior detections that no assignment claims.

        A detection is uncovered when it has no assignment ids, or when
        remaining_assignment_ids is given and none of its ids remain. Unless
        redetecting, each detection guides its own pass to its own accounts.
        """
        state = CorrelationState()
        session.uncovered_state = state

        for detection in session.identity.role_detections:
            uncovered = not detection.has_assignment_ids()
            if not uncovered and remaining_assignment_ids is not None:
                uncovered = not any(i in remaining_assignment_ids for i in detection.assignment_ids)
            if not uncovered:
                continue

            role = self.graph.find_role(detection.role_id, detection.role_name)
            if role is None:
                logger.warning("Skipping detection of unresolved role", role=detection.role_name,
                               detection_id=detection.detection_id)
                continue

            context = TraversalContext(Mode.DETECTING, state,
                                       guided_detection=None if redetecting else detection)
            HierarchyMatcher(session, context).evaluate_top_down(role, None)

        self.save_role_detections(session, TraversalContext(Mode.DETECTING, state))
        return state

    def run_assignment_detection(self, session: EvaluationSession, assignments: List[RoleAssignment]):
        for assignment in assignments:
            self.run_guided_detection(session, assignment)

    # ------------------------------------------------------------------
    # Saving detections
    # ------------------------------------------------------------------

    def save_role_detections(self, session: EvaluationSession, context: TraversalContext) -> List[RoleDetection]:
        """
        Turn the leaf detections of a finished pass into RoleDetections.

        A role detected again in a later pass reuses the earlier detection
        (guided passes also require the same accounts). Assigned-detectable
        roles matched silently are not persisted.
        """
        state = context.state
        assignment = context.guided_assignment
        detections: List[RoleDetection] = []

        for role in get_detectables(self.graph, state, True):
            entitlements = collect_matched_entitlements(self.graph, state, role, True)
            neu = RoleDetection(role_name=role.name, role_id=role.id, entitlements=entitlements)

            role_state = state.get_role_state(role)
            should_persist = not role.assigned_detectable or role_state.detectable_on_assigned_only

            detection = session.get_previous_detection(neu, guided=assignment is not None)
            if detection is None:
                detection = neu
                if should_persist:
                    session.add_new_detection(detection)
            if should_persist:
                detections.append(detection)

            if assignment is not None and self.is_guided_detection_relevant(context, detection):
                detection.add_assignment_id(assignment.assignment_id)
                if session.options.promote_soft_permits and assignment.get_permitted_role(role.name, role.id) is None:
                    assignment.add_permitted_role(RoleAssignment(
                        role_name=role.name,
                        role_id=role.id,
                        source=Source.TASK,
                        assigner=RoleAssignment.ASSIGNER_SYSTEM,
                        date=datetime.now(),
                    ))

        if assignment is not None:
            self._add_missing_role_targets(session, assignment, detections)
        return detections

    def _add_missing_role_targets(self, session: EvaluationSession, assignment: RoleAssignment,
                                  detections: List[RoleDetection]):
        # only hard permits get targets added
        for detection in detections:
            if assignment.get_permitted_role(detection.role_name, detection.role_id) is None:
                continue
            for target in detection.targets:
                if any(target.is_match(t) for t in assignment.targets):
                    continue
                logger.info("Adding missing role target", identity=session.identity.name,
                            assigned_role=assignment.role_name, detected_role=detection.role_name,
                            application=target.application, native_identity=target.native_identity)
                assignment.add_role_target(RoleTarget(application=target.application,
                                                      native_identity=target.native_identity,
                                                      instance=target.instance))

    def is_guided_detection_relevant(self, context: TraversalContext, detection: RoleDetection) -> bool:
        """
        Whether a guided pass's detection belongs to the guiding assignment.

        Guided passes can detect roles deeper in the hierarchy than the
        assignment requires; those are not claimed by the assignment.
        """
        assignment = context.guided_assignment
        if assignment is None or not context.detectable_roles:
            return False
        if assignment.targets and not self._is_detected_targets_relevant(assignment, detection):
            return False
        return any(r.name == detection.role_name for r in context.detectable_roles)

    def _is_detected_targets_relevant(self, assignment: RoleAssignment, detection: RoleDetection) -> bool:
        # per application, a target naming the detected role beats a generic one
        by_application: Dict[str, RoleTarget] = {}
        for target in assignment.targets:
            if target.role_name == detection.role_name:
                by_application[target.application] = target
            elif not target.role_name and target.application not in by_application:
                by_application[target.application] = target

        for target in detection.targets:
            if not any(target.is_match(t) for t in by_application.values()):
                return False
        return True

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _copy_assignments(self, assignments: List[RoleAssignment]) -> List[RoleAssignment]:
        copies = []
        for assignment in assignments:
            assignment = assignment.copy()
            if assignment.assignment_id is None:
                logger.info("Adding missing assignment id", role=assignment.role_name)
                assignment.assignment_id = new_id()
            copies.append(assignment)
        return copies

    def evaluate(self, identity: Identity, options: Optional[EvaluationOptions] = None) -> CorrelationResult:
        """Full assignment and detection for one identity. The identity is not modified."""
        session = self.new_session(identity, options)
        with trace_operation("correlation.evaluate", identity=identity.name):
            logger.info("Correlating entitlements", identity=identity.name)

            if session.options.do_role_assignment:
                assignments = self.run_assignment_pass(session, self.graph.get_assignable_roles())
            else:
                assignments = self._copy_assignments(identity.role_assignments)
            session.set_current_assignments(assignments)

            self.run_assignment_detection(session, assignments)
            self.run_unguided_detection(session)
            self.run_uncovered_detection(session, {a.assignment_id for a in assignments})

            if session.options.demote_soft_permits:
                demote_soft_permits(assignments)

            return self._build_result(session, assignments)

    def process_birthright_roles(self, identity: Identity,
                                 options: Optional[EvaluationOptions] = None) -> CorrelationResult:
        """Assignment over birthright roles only, then guided and unguided detection."""
        session = self.new_session(identity, options)
        with trace_operation("correlation.process_birthright_roles", identity=identity.name):
            assignments = self.run_assignment_pass(session, self.graph.get_birthright_roles(),
                                                   birthright_only=True)
            session.set_current_assignments(assignments)

            self.run_assignment_detection(session, assignments)
            self.run_unguided_detection(session)

            if session.options.demote_soft_permits:
                demote_soft_permits(assignments)

            return self._build_result(session, assignments)

    def detect_assignment(self, identity: Identity, assignment: RoleAssignment,
                          options: Optional[EvaluationOptions] = None) -> CorrelationResult:
        """Guided detection for one new assignment, merged into the prior detections."""
        return self._detect_assignment(identity, assignment, False, options)

    def detect_deassignment(self, identity: Identity, assignment: RoleAssignment,
                            options: Optional[EvaluationOptions] = None) -> CorrelationResult:
        """Adjust the prior detections after an assignment was removed."""
        return self._detect_assignment(identity, assignment, True, options)

    def _detect_assignment(self, identity: Identity, assignment: RoleAssignment, deassignment: bool,
                           options: Optional[EvaluationOptions]) -> CorrelationResult:
        if assignment.assignment_id is None:
            raise InvalidAssignmentError("Missing assignment id", {"role": assignment.role_name})
        if not deassignment:
            # a deassigned role may already be gone from the graph
            self.graph.require_role(assignment.role_id, assignment.role_name)

        session = self.new_session(identity, options)
        assignment = assignment.copy()
        with trace_operation("correlation.detect_assignment", identity=identity.name,
                             assignment_id=assignment.assignment_id, deassignment=deassignment):
            context = self.run_guided_detection(session, assignment)
            processed = context.detectable_roles if context is not None else []

            detections = reconcile_assignment_detections(assignment, identity.role_detections,
                                                         session.new_detections, processed, deassignment)
            session.stats.roles_detected = len(detections)
            return CorrelationResult(
                identity_name=identity.name,
                assignments=[assignment],
                detections=detections,
                exceptions=identity.exceptions.copy() if identity.exceptions is not None else None,
                stats=session.stats,
                analysis=CorrelationAnalysis(session),
                detected_roles_changed=self._names_changed(
                    _distinct_names(d.role_name for d in detections), identity.detected_role_names()),
            )

    def redetect(self, identity: Identity, options: Optional[EvaluationOptions] = None) -> CorrelationResult:
        """
        Guided detection of the current assignments plus uncovered detection,
        then removal of prior exceptions the guided passes now explain.
        """
        session = self.new_session(identity, options)
        with trace_operation("correlation.redetect", identity=identity.name):
            assignments = self._copy_assignments(identity.role_assignments)
            session.set_current_assignments(assignments)

            self.run_assignment_detection(session, assignments)
            self.run_uncovered_detection(session, {a.assignment_id for a in assignments}, redetecting=True)

            detections = reconcile_new_detections(session.new_detections, identity.role_detections)
            exceptions = remove_covered_exceptions(identity.exceptions, session.assignment_states.values())
            session.stats.roles_detected = len(detections)

            previous = identity.exceptions or EntitlementCollection()
            return CorrelationResult(
                identity_name=identity.name,
                assignments=assignments,
                detections=detections,
                exceptions=exceptions,
                stats=session.stats,
                analysis=CorrelationAnalysis(session),
                detected_roles_changed=self._names_changed(
                    _distinct_names(d.role_name for d in detections), identity.detected_role_names()),
                exceptions_changed=previous != exceptions,
            )

    def detect_uncovered(self, identity: Identity, options: Optional[EvaluationOptions] = None) -> List[RoleDetection]:
        """Re-detect only the prior detections that no current assignment claims."""
        session = self.new_session(identity, options)
        with trace_operation("correlation.detect_uncovered", identity=identity.name):
            ids = {a.assignment_id for a in identity.role_assignments if a.assignment_id}
            self.run_uncovered_detection(session, ids)
            return reconcile_new_detections(session.new_detections, identity.role_detections)

    def analyze_contributing_entitlements(self, identity: Identity,
                                          assignment: Optional[RoleAssignment] = None,
                                          options: Optional[EvaluationOptions] = None) -> CorrelationAnalysis:
        """
        Guided detection for one assignment, or for every assignment plus
        uncovered detection, without unguided detection.
        """
        session = self.new_session(identity, options)
        with trace_operation("correlation.analyze_contributing_entitlements", identity=identity.name):
            if assignment is not None:
                if assignment.assignment_id is None:
                    raise InvalidAssignmentError("Missing assignment id", {"role": assignment.role_name})
                self.graph.require_role(assignment.role_id, assignment.role_name)
                self.run_guided_detection(session, assignment.copy())
                return CorrelationAnalysis(session)

            assignments = [a.copy() for a in identity.role_assignments]
            generated_ids: Dict[str, str] = {}
            for analysed in assignments:
                if analysed.assignment_id is None:
                    analysed.assignment_id = new_id()
                    generated_ids.setdefault(analysed.role_name, analysed.assignment_id)
            self.run_assignment_detection(session, assignments)
            self.run_uncovered_detection(session)
        return CorrelationAnalysis(session, generated_ids)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @staticmethod
    def _names_changed(new_names: List[str], old_names: List[str]) -> bool:
        return set(new_names) != set(old_names)

    def _build_result(self, session: EvaluationSession, assignments: List[RoleAssignment]) -> CorrelationResult:
        identity = session.identity
        detections = reconcile_new_detections(session.new_detections, identity.role_detections)
        exceptions = compute_exceptions(identity.all_entitlements(), detections)

        session.stats.roles_assigned = len(assignments)
        session.stats.roles_detected = len(detections)

        result = CorrelationResult(
            identity_name=identity.name,
            assignments=assignments,
            detections=detections,
            exceptions=exceptions,
            stats=session.stats,
            analysis=CorrelationAnalysis(session),
            accounts_without_entitlements=[a for a in identity.accounts if not a.has_entitlements()],
        )
        result.assigned_roles_changed = self._names_changed(result.assigned_role_names,
                                                            identity.assigned_role_names())
        result.detected_roles_changed = self._names_changed(result.detected_role_names,
                                                            identity.detected_role_names())
        result.exceptions_changed = (identity.exceptions or EntitlementCollection()) != exceptions

        add_span_attributes(roles_considered=session.stats.roles_considered,
                            selectors_evaluated=session.stats.selectors_evaluated)
        logger.info("Correlation complete", identity=identity.name, total_roles=self.graph.size(),
                    **session.stats.to_dict())
        return result
