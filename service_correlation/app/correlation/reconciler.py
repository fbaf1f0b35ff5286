"""
Reconciliation of newly computed results against persisted ones.

Assignments are keyed by role name; detections by role name plus target
accounts, since one role may be detected independently on different
accounts. Inputs are never mutated: reconciled lists contain copies.
"""

import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from shared.errors import InvalidAssignmentError
from shared.logging import get_logger

from .entitlements import EntitlementCollection
from .interfaces import RoleGraph
from .models import Role, RoleAssignment, RoleDetection, Source
from .state import CorrelationState

logger = get_logger("correlation.reconciler")


def new_id() -> str:
    return uuid.uuid4().hex


def reconcile_role_assignments(graph: RoleGraph, current: List[RoleAssignment], matched_roles: List[Role],
                               birthright_only: bool = False) -> List[RoleAssignment]:
    """
    Merge the roles matched by an assignment pass with the current assignments.

    Rule-sourced assignments whose role no longer matches are dropped.
    Manual assignments survive unless their role is gone or disabled
    (never when reconciling birthright roles only). Matched roles without
    an assignment get a new rule assignment with a fresh id.
    """
    resolved: List[RoleAssignment] = []
    for assignment in current:
        role = graph.find_role(assignment.role_id, assignment.role_name)
        if role is None:
            logger.warning("Dropping assignment of unresolved role", role=assignment.role_name,
                           assignment_id=assignment.assignment_id)
            continue
        if birthright_only and not role.birthright:
            continue
        assignment = assignment.copy()
        if role.name != assignment.role_name:
            logger.info("Fixing renamed role in assignment", old_name=assignment.role_name, role=role.name)
            assignment.role_name = role.name
        resolved.append(assignment)

    existing = {a.role_name for a in resolved}
    matched = {r.name: r for r in matched_roles}

    reconciled: List[RoleAssignment] = []
    for assignment in resolved:
        if assignment.assignment_id is None:
            logger.info("Adding missing assignment id", role=assignment.role_name)
            assignment.assignment_id = new_id()

        if assignment.role_name in matched:
            reconciled.append(assignment)
        elif assignment.is_manual and not birthright_only:
            role = graph.find_role(assignment.role_id, assignment.role_name)
            if role is not None and not role.disabled:
                reconciled.append(assignment)

    for role in matched_roles:
        if role.name not in existing:
            reconciled.append(RoleAssignment(
                role_name=role.name,
                role_id=role.id,
                assignment_id=new_id(),
                source=Source.RULE,
                date=datetime.now(),
            ))

    return reconciled


def fix_role_assignments(graph: RoleGraph, assignments: List[RoleAssignment]) -> List[RoleAssignment]:
    """Fill in missing role ids and drop assignments of unresolved roles."""
    fixed = []
    for assignment in assignments:
        if assignment.role_id is None:
            role = graph.get_role_by_name(assignment.role_name)
            if role is None:
                logger.warning("Removing assignment for unresolved role", role=assignment.role_name)
                continue
            if role.id is not None:
                logger.warning("Fixing assignment with missing role id", role=role.name)
                assignment.role_id = role.id
        fixed.append(assignment)
    return fixed


def demote_soft_permits(assignments: Iterable[RoleAssignment]):
    """Remove system-promoted permits from each assignment."""
    for assignment in assignments:
        assignment.permitted_roles = [p for p in assignment.permitted_roles if not p.is_promoted_soft_permit]


def find_detection(detections: List[RoleDetection], detection: RoleDetection,
                   remove: bool = False) -> Optional[RoleDetection]:
    """Find a detection of the same role on the same accounts, optionally removing it."""
    for index, other in enumerate(detections):
        if detection.is_match(other):
            if remove:
                del detections[index]
            return other
    return None


def reconcile_new_detections(new_detections: List[RoleDetection],
                             old_detections: List[RoleDetection]) -> List[RoleDetection]:
    """Carry the date and id of matching prior detections over to a fully rebuilt list."""
    for detection in new_detections:
        old = find_detection(old_detections, detection)
        if old is not None:
            detection.date = old.date
            detection.detection_id = old.detection_id
        if detection.date is None:
            detection.date = datetime.now()
        if detection.detection_id is None:
            detection.detection_id = new_id()
    return new_detections


def get_reconsidered_detections(assignment: RoleAssignment, old_detections: List[RoleDetection],
                                processed_roles: List[Role]) -> Dict[str, RoleDetection]:
    """
    Prior detections that a guided pass for this assignment may change,
    keyed by detection id.

    These are the detections claimed by the assignment, plus detections
    of the roles just processed whose targets the assignment allows.
    Missing detection ids are generated as a side effect.
    """
    processed = {r.name for r in processed_roles}
    reconsidered: Dict[str, RoleDetection] = {}
    for detection in old_detections:
        if detection.detection_id is None:
            detection.detection_id = new_id()
        if detection.has_assignment_id(assignment.assignment_id):
            reconsidered[detection.detection_id] = detection
        elif detection.role_name in processed and detection.has_compatible_targets(assignment.targets):
            reconsidered[detection.detection_id] = detection
    return reconsidered


def reconcile_assignment_detections(assignment: RoleAssignment, old_detections: List[RoleDetection],
                                    new_detections: List[RoleDetection], processed_roles: List[Role],
                                    deassignment: bool = False) -> List[RoleDetection]:
    """
    Incrementally update a detection list after a guided pass for one
    assignment, keeping the order of the prior list.
    """
    assignment_id = assignment.assignment_id
    if assignment_id is None:
        raise InvalidAssignmentError("Missing assignment id", {"role": assignment.role_name})

    old_detections = [d.copy() for d in old_detections]
    remaining = list(new_detections)
    reconsidered = get_reconsidered_detections(assignment, old_detections, processed_roles)

    merged: List[RoleDetection] = []
    for old in old_detections:
        if old.date is None:
            old.date = datetime.now()

        if old.detection_id not in reconsidered:
            merged.append(old)
            continue

        neu = find_detection(remaining, old, remove=True)
        if neu is not None:
            old.entitlements = neu.entitlements
            if deassignment:
                old.remove_assignment_id(assignment_id)
            else:
                old.add_assignment_id(assignment_id)
            merged.append(old)
        else:
            old.remove_assignment_id(assignment_id)
            if old.has_assignment_ids():
                merged.append(old)

    # Detections first found during a deassignment are dropped rather than
    # appended unclaimed; the next full evaluation picks them up through
    # unguided detection.
    if not deassignment:
        for neu in remaining:
            neu.add_assignment_id(assignment_id)
            neu.date = datetime.now()
            if neu.detection_id is None:
                neu.detection_id = new_id()
            merged.append(neu)

    return merged


def compute_exceptions(all_entitlements: EntitlementCollection,
                       detections: Iterable[RoleDetection]) -> EntitlementCollection:
    """Entitlements not explained by any detection."""
    remaining = all_entitlements.copy()
    for detection in detections:
        if remaining.is_empty():
            break
        remaining.remove(detection.entitlements)
    return remaining


def remove_covered_exceptions(previous: Optional[EntitlementCollection],
                              states: Iterable[CorrelationState]) -> EntitlementCollection:
    """Remove from prior exceptions whatever the given passes detected."""
    remaining = previous.copy() if previous is not None else EntitlementCollection()
    for state in states:
        for role in state.detected_roles:
            remaining.remove(state.get_matched_entitlements(role))
    return remaining
