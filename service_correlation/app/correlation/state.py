"""
Per-pass correlation state and memoization.

A CorrelationState lives for exactly one traversal pass (the assignment
pass, one guided detection, the unguided pass or the uncovered pass).
Role states are keyed by role *name*, not id, so hypothetical candidate
roles without an id share the same cache contract as persisted roles for
the lifetime of one evaluation session.
"""

from enum import Enum
from typing import Dict, List, Optional

from .entitlements import EntitlementCollection, Permission
from .models import Account, Role


class Mode(str, Enum):
    """Traversal mode, threaded through every matching call."""
    ASSIGNING = "assigning"
    DETECTING = "detecting"


class RoleCorrelationState:
    """Scratch record for one role within one pass."""

    def __init__(self, role: Role):
        self.role = role
        self.assigned = False
        self.detected = False
        self.assignment_evaluated = False
        self.detection_evaluated = False
        self.detectable_on_assigned_only = False
        self.matched_entitlements = EntitlementCollection()

    @property
    def name(self) -> str:
        return self.role.name

    def copy(self) -> "RoleCorrelationState":
        state = RoleCorrelationState(self.role)
        state.assigned = self.assigned
        state.detected = self.detected
        state.assignment_evaluated = self.assignment_evaluated
        state.detection_evaluated = self.detection_evaluated
        state.detectable_on_assigned_only = self.detectable_on_assigned_only
        state.matched_entitlements = self.matched_entitlements.copy()
        return state

    def has_been_evaluated(self, mode: Mode) -> bool:
        return self.detection_evaluated if mode == Mode.DETECTING else self.assignment_evaluated

    def is_matching(self, mode: Mode) -> bool:
        return self.detected if mode == Mode.DETECTING else self.assigned

    def set_detectable_on_assigned_only(self, detectable: bool):
        # Sticky: once set it is never cleared
        if detectable:
            self.detectable_on_assigned_only = True

    def add_matched_attributes(self, account: Account, attributes: Dict[str, List]):
        for name, values in attributes.items():
            self.matched_entitlements.add_attribute(account.application, account.instance,
                                                    account.native_identity, name, values,
                                                    account.display_name)

    def add_matched_permission(self, account: Account, permission: Permission):
        self.matched_entitlements.add_permission(account.application, account.instance,
                                                 account.native_identity, permission,
                                                 account.display_name)

    def merge(self, other: "RoleCorrelationState"):
        self.assigned = self.assigned or other.assigned
        self.detected = self.detected or other.detected
        self.assignment_evaluated = self.assignment_evaluated or other.assignment_evaluated
        self.detection_evaluated = self.detection_evaluated or other.detection_evaluated
        self.set_detectable_on_assigned_only(other.detectable_on_assigned_only)
        self.matched_entitlements.add(other.matched_entitlements)


class CorrelationState:
    """Role states for one pass plus the distinct assigned and detected role sets."""

    def __init__(self, assignment_id: Optional[str] = None):
        self.assignment_id = assignment_id
        self._role_states: Dict[str, RoleCorrelationState] = {}
        # dicts keep insertion order and stay distinct by name
        self._assigned: Dict[str, Role] = {}
        self._detected: Dict[str, Role] = {}

    def get_role_state(self, role: Role) -> RoleCorrelationState:
        state = self._role_states.get(role.name)
        if state is None:
            state = RoleCorrelationState(role)
            self._role_states[role.name] = state
        return state

    def find_role_state(self, role_name: str) -> Optional[RoleCorrelationState]:
        return self._role_states.get(role_name)

    def has_been_evaluated(self, role: Role, mode: Mode) -> bool:
        state = self._role_states.get(role.name)
        return state is not None and state.has_been_evaluated(mode)

    def is_matching(self, role: Role, mode: Mode) -> bool:
        state = self._role_states.get(role.name)
        return state is not None and state.is_matching(mode)

    def set_matched(self, role: Role, matched: bool, mode: Mode, silent: bool = False):
        """
        Record the verdict for a role without adding it to the result sets.

        A silent match participates in hierarchy logic but an
        assigned-detectable role matched silently is not persisted.
        """
        state = self.get_role_state(role)
        if mode == Mode.DETECTING:
            state.detected = matched
            state.detection_evaluated = True
            if role.assigned_detectable:
                state.set_detectable_on_assigned_only(not silent)
        else:
            state.assigned = matched
            state.assignment_evaluated = True

    def add_match(self, role: Role, mode: Mode):
        """Add a role to the assigned or detected result set."""
        if mode == Mode.DETECTING:
            self._detected.setdefault(role.name, role)
        else:
            self._assigned.setdefault(role.name, role)

    @property
    def assigned_roles(self) -> List[Role]:
        return list(self._assigned.values())

    @property
    def detected_roles(self) -> List[Role]:
        return list(self._detected.values())

    def get_matched_entitlements(self, role: Role) -> Optional[EntitlementCollection]:
        state = self._role_states.get(role.name)
        return state.matched_entitlements if state is not None else None

    def add_matched_attributes(self, role: Role, account: Account, attributes: Dict[str, List]):
        self.get_role_state(role).add_matched_attributes(account, attributes)

    def add_matched_permission(self, role: Role, account: Account, permission: Permission):
        self.get_role_state(role).add_matched_permission(account, permission)

    def role_states(self) -> List[RoleCorrelationState]:
        return list(self._role_states.values())

    def merge(self, other: "CorrelationState") -> "CorrelationState":
        """Union another pass into this one, for read-only reporting."""
        for role in other.assigned_roles:
            self._assigned.setdefault(role.name, role)
        for role in other.detected_roles:
            self._detected.setdefault(role.name, role)
        for role_state in other.role_states():
            existing = self._role_states.get(role_state.name)
            if existing is None:
                self._role_states[role_state.name] = role_state.copy()
            else:
                existing.merge(role_state)
        return self

    def __repr__(self) -> str:
        return (f"CorrelationState(assignment_id={self.assignment_id!r}, "
                f"assigned={list(self._assigned)!r}, detected={list(self._detected)!r})")
