"""
Domain models for role correlation.

These are plain dataclasses: the role graph, identities, accounts and the
assignment/detection records the correlator produces and reconciles.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional

from .conditions import MatchCondition, as_values
from .entitlements import EntitlementCollection, Permission


class Source(str, Enum):
    """Where a role assignment came from."""
    RULE = "rule"
    MANUAL = "manual"
    TASK = "task"


@dataclass
class Account:
    """An identity's account on an external application."""
    application: str
    native_identity: str
    instance: Optional[str] = None
    display_name: Optional[str] = None
    profile_class: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    entitlement_attributes: Optional[List[str]] = None
    permissions: List[Permission] = field(default_factory=list)

    def get_entitlement_attributes(self) -> Dict[str, List[Any]]:
        """Attribute values that count as entitlements (all attributes when unspecified)."""
        names = self.entitlement_attributes
        if names is None:
            names = list(self.attributes.keys())
        result = {}
        for name in names:
            values = as_values(self.attributes.get(name))
            if values:
                result[name] = values
        return result

    def has_entitlements(self) -> bool:
        if self.get_entitlement_attributes():
            return True
        return any(p.rights for p in self.permissions)


@dataclass(frozen=True)
class RoleTarget:
    """An account an assignment or detection is bound to."""
    application: str
    native_identity: str
    instance: Optional[str] = None
    role_name: Optional[str] = None

    @property
    def key(self):
        return (self.application, self.instance, self.native_identity)

    def matches_application(self, application: str, instance: Optional[str] = None) -> bool:
        return self.application == application and self.instance == instance

    def is_match(self, other: "RoleTarget") -> bool:
        """Same account, ignoring the role the target was made for."""
        return self.key == other.key

    @staticmethod
    def same_targets(first: Iterable["RoleTarget"], second: Iterable["RoleTarget"]) -> bool:
        return {t.key for t in first} == {t.key for t in second}


@dataclass
class CorrelationProfile:
    """Filter and permission constraints scoped to an application or profile class."""
    application: str
    profile_class: Optional[str] = None
    filters: List[MatchCondition] = field(default_factory=list)
    permissions: List[Permission] = field(default_factory=list)

    @property
    def scope(self) -> str:
        return self.profile_class or self.application


@dataclass
class Selector:
    """Assignment selector: an opaque rule reference plus attribute conditions."""
    rule: Optional[str] = None
    conditions: List[MatchCondition] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.rule and not self.conditions


@dataclass
class Role:
    """A node of the role hierarchy."""
    name: str
    id: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    disabled: bool = False
    assignable: bool = False
    detectable: bool = False
    assigned_detectable: bool = False
    or_profiles: bool = False
    birthright: bool = False
    selector: Optional[Selector] = None
    profiles: List[CorrelationProfile] = field(default_factory=list)
    inheritance: List[str] = field(default_factory=list)
    requirements: List[str] = field(default_factory=list)
    permits: List[str] = field(default_factory=list)

    def has_selector(self) -> bool:
        return self.selector is not None and not self.selector.is_empty()

    def has_profiles(self) -> bool:
        return bool(self.profiles)


@dataclass
class RoleAssignment:
    """A role granted to an identity, optionally scoped to target accounts."""
    ASSIGNER_SYSTEM: ClassVar[str] = "system"

    role_name: str
    role_id: Optional[str] = None
    assignment_id: Optional[str] = None
    targets: List[RoleTarget] = field(default_factory=list)
    source: Source = Source.RULE
    negative: bool = False
    assigner: Optional[str] = None
    date: Optional[datetime] = None
    permitted_roles: List["RoleAssignment"] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.source, Source):
            self.source = Source(self.source)

    @property
    def is_manual(self) -> bool:
        return self.source == Source.MANUAL

    @property
    def is_promoted_soft_permit(self) -> bool:
        return self.assigner == self.ASSIGNER_SYSTEM

    def get_permitted_role(self, role_name: str, role_id: Optional[str] = None) -> Optional["RoleAssignment"]:
        for permit in self.permitted_roles:
            if (role_id and permit.role_id == role_id) or permit.role_name == role_name:
                return permit
        return None

    def add_permitted_role(self, permit: "RoleAssignment"):
        self.permitted_roles.append(permit)

    def remove_permitted_role(self, permit: "RoleAssignment"):
        self.permitted_roles = [p for p in self.permitted_roles if p is not permit]

    def add_role_target(self, target: RoleTarget):
        for existing in self.targets:
            if existing.is_match(target) and existing.role_name == target.role_name:
                return
        self.targets.append(target)

    def copy(self) -> "RoleAssignment":
        return copy.deepcopy(self)


@dataclass
class RoleDetection:
    """Evidence that an identity's entitlements satisfy a role."""
    role_name: str
    role_id: Optional[str] = None
    entitlements: EntitlementCollection = field(default_factory=EntitlementCollection)
    assignment_ids: List[str] = field(default_factory=list)
    detection_id: Optional[str] = None
    date: Optional[datetime] = None

    @property
    def targets(self) -> List[RoleTarget]:
        return [RoleTarget(application=app, instance=instance, native_identity=native)
                for app, instance, native in self.entitlements.keys()]

    def is_match(self, other: "RoleDetection") -> bool:
        """Same role detected on the same set of accounts."""
        return self.role_name == other.role_name and RoleTarget.same_targets(self.targets, other.targets)

    def has_compatible_targets(self, assignment_targets: List[RoleTarget]) -> bool:
        """True when every detection target is one of the assignment's targets."""
        if not assignment_targets:
            return True
        for target in self.targets:
            if not any(target.is_match(t) for t in assignment_targets
                       if t.role_name in (None, self.role_name)):
                return False
        return True

    def has_assignment_id(self, assignment_id: str) -> bool:
        return assignment_id in self.assignment_ids

    def has_assignment_ids(self) -> bool:
        return bool(self.assignment_ids)

    def add_assignment_id(self, assignment_id: Optional[str]):
        if assignment_id and assignment_id not in self.assignment_ids:
            self.assignment_ids.append(assignment_id)

    def remove_assignment_id(self, assignment_id: str):
        self.assignment_ids = [a for a in self.assignment_ids if a != assignment_id]

    def copy(self) -> "RoleDetection":
        return RoleDetection(
            role_name=self.role_name,
            role_id=self.role_id,
            entitlements=self.entitlements.copy(),
            assignment_ids=list(self.assignment_ids),
            detection_id=self.detection_id,
            date=self.date,
        )


@dataclass
class Identity:
    """A subject holding accounts plus previously persisted correlation results."""
    name: str
    id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    accounts: List[Account] = field(default_factory=list)
    role_assignments: List[RoleAssignment] = field(default_factory=list)
    role_detections: List[RoleDetection] = field(default_factory=list)
    exceptions: Optional[EntitlementCollection] = None

    def get_role_assignments(self, role_name: str) -> List[RoleAssignment]:
        return [a for a in self.role_assignments if a.role_name == role_name]

    def get_role_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        for assignment in self.role_assignments:
            if assignment.assignment_id == assignment_id:
                return assignment
        return None

    def has_negative_assignment(self, role_name: str) -> bool:
        return any(a.negative for a in self.get_role_assignments(role_name))

    def assigned_role_names(self) -> List[str]:
        names: List[str] = []
        for assignment in self.role_assignments:
            if not assignment.negative and assignment.role_name not in names:
                names.append(assignment.role_name)
        return names

    def detected_role_names(self) -> List[str]:
        names: List[str] = []
        for detection in self.role_detections:
            if detection.role_name not in names:
                names.append(detection.role_name)
        return names

    def all_entitlements(self) -> EntitlementCollection:
        return EntitlementCollection.from_accounts(self.accounts)
