"""
In-memory role graph and its YAML document loader.
"""

import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from shared.errors import CyclicRoleGraphError, RoleGraphValidationError
from shared.logging import get_logger
from shared.tracing import trace_function

from .conditions import ConditionOperator, MatchCondition
from .entitlements import Permission
from .interfaces import RoleGraph
from .models import CorrelationProfile, Role, RoleAssignment, Selector

logger = get_logger("correlation.graph")


def distinct_roles(roles: Iterable[Role]) -> List[Role]:
    """Distinct by name, keeping first-seen order."""
    seen: Dict[str, Role] = {}
    for role in roles:
        seen.setdefault(role.name, role)
    return list(seen.values())


def _is_assignable(role: Role) -> bool:
    return role.assignable


def _is_detectable(role: Role) -> bool:
    return role.detectable and not role.assigned_detectable


def _is_birthright(role: Role) -> bool:
    return role.birthright


class InMemoryRoleGraph(RoleGraph):
    """
    RoleGraph over a list of roles, with edges taken from each role's
    inheritance (parent names).

    Required/permitted expansions are cached per role name; the cache is
    shared by worker threads so it is guarded by a lock.
    """

    def __init__(self, roles: Iterable[Role]):
        self._roles_by_name: Dict[str, Role] = {}
        self._roles_by_id: Dict[str, Role] = {}
        self._children: Dict[str, List[str]] = {}
        self._required_permitted: Dict[str, List[Role]] = {}
        self._lock = threading.Lock()

        for role in roles:
            self._roles_by_name[role.name] = role
            if role.id:
                self._roles_by_id[role.id] = role

        for role in self._roles_by_name.values():
            for parent_name in role.inheritance:
                self._children.setdefault(parent_name, []).append(role.name)

    def get_role(self, role_id: str) -> Optional[Role]:
        return self._roles_by_id.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        return self._roles_by_name.get(name)

    def roles(self) -> List[Role]:
        return list(self._roles_by_name.values())

    def size(self) -> int:
        return len(self._roles_by_name)

    def get_parents(self, role: Role) -> List[Role]:
        current = self._roles_by_name.get(role.name, role)
        parents = []
        for parent_name in current.inheritance:
            parent = self._roles_by_name.get(parent_name)
            if parent is None:
                logger.warning("Unresolved parent role", role=role.name, parent=parent_name)
                continue
            parents.append(parent)
        return parents

    def get_children(self, role: Role) -> List[Role]:
        return [self._roles_by_name[name] for name in self._children.get(role.name, [])]

    def _is_least_specific(self, role: Role, condition, path: List[str]) -> bool:
        if role.name in path:
            raise CyclicRoleGraphError(path + [role.name])
        if not condition(role):
            return False
        # A role is not least specific when one of its parents is
        for parent in self.get_parents(role):
            if self._is_least_specific(parent, condition, path + [role.name]):
                return False
        return True

    def _least_specific(self, condition) -> List[Role]:
        return [r for r in self._roles_by_name.values() if self._is_least_specific(r, condition, [])]

    def get_assignable_roles(self) -> List[Role]:
        return self._least_specific(_is_assignable)

    def get_detectable_roles(self) -> List[Role]:
        return self._least_specific(_is_detectable)

    def get_birthright_roles(self) -> List[Role]:
        return self._least_specific(_is_birthright)

    def _resolve_names(self, names: List[str], role: Role, relation: str) -> List[Role]:
        resolved = []
        for name in names:
            other = self._roles_by_name.get(name)
            if other is None:
                logger.warning("Unresolved role reference", role=role.name, relation=relation, reference=name)
                continue
            resolved.append(other)
        return resolved

    def _load_required_and_permitted(self, role: Role, loading: set, result: List[Role]):
        # loading guards against cycles through requirements and permits
        if role.name in loading:
            return
        loading.add(role.name)

        for parent in self.get_parents(role):
            self._load_required_and_permitted(parent, loading, result)

        required = self._resolve_names(role.requirements, role, "requirement")
        for other in required:
            self._load_required_and_permitted(other, loading, result)
        result.extend(required)

        permitted = self._resolve_names(role.permits, role, "permit")
        for other in permitted:
            self._load_required_and_permitted(other, loading, result)
        result.extend(permitted)

    def get_required_or_permitted(self, role: Role) -> List[Role]:
        """Roles required or permitted by a role, through its inheritance."""
        with self._lock:
            cached = self._required_permitted.get(role.name)
            if cached is None:
                result: List[Role] = []
                self._load_required_and_permitted(self._roles_by_name.get(role.name, role), set(), result)
                cached = distinct_roles(result)
                self._required_permitted[role.name] = cached
        return list(cached)

    def get_required_or_permitted_names(self, role: Role) -> List[str]:
        return [r.name for r in self.get_required_or_permitted(role)]

    def _inherited_detectables(self, role: Role, path: List[str]) -> List[Role]:
        if role.name in path:
            raise CyclicRoleGraphError(path + [role.name])
        inherited: List[Role] = []
        for parent in self.get_parents(role):
            inherited.extend(self._inherited_detectables(parent, path + [role.name]))
        if role.detectable:
            inherited.append(role)
        return inherited

    def get_detectable_roles_for_assignment(self, assignment: RoleAssignment) -> List[Role]:
        assigned = self.find_role(assignment.role_id, assignment.role_name)
        if assigned is None:
            logger.error("Unresolved role", role=assignment.role_name, assignment_id=assignment.assignment_id)
            return []

        roles = [r for r in self.get_required_or_permitted(assigned)
                 if r.detectable or r.assigned_detectable]
        if assigned.detectable:
            roles.append(assigned)
        roles.extend(self._inherited_detectables(assigned, []))
        return distinct_roles(roles)

    def validate(self) -> "InMemoryRoleGraph":
        """Fail fast on inheritance cycles."""
        done: set = set()

        def visit(role: Role, path: List[str]):
            if role.name in path:
                raise CyclicRoleGraphError(path[path.index(role.name):] + [role.name])
            if role.name in done:
                return
            for parent in self.get_parents(role):
                visit(parent, path + [role.name])
            done.add(role.name)

        for role in self._roles_by_name.values():
            visit(role, [])
        return self

    def with_candidates(self, candidates: Iterable[Role]) -> "InMemoryRoleGraph":
        """Overlay hypothetical roles, by name, for impact analysis."""
        merged = dict(self._roles_by_name)
        for candidate in candidates:
            merged[candidate.name] = candidate
        return InMemoryRoleGraph(merged.values())


class ConditionDocument(BaseModel):
    """Attribute condition in a role graph document."""
    field: str = Field(..., description="Attribute name, dotted for nested values")
    operator: ConditionOperator = Field(ConditionOperator.EQUALS, description="Condition operator")
    value: Any = Field(None, description="Expected value(s)")
    description: Optional[str] = Field(None, description="Condition description")

    def to_condition(self) -> MatchCondition:
        return MatchCondition(field=self.field, operator=self.operator,
                              value=self.value, description=self.description)


class PermissionDocument(BaseModel):
    """Required permission in a correlation profile."""
    target: str = Field(..., description="Permission target")
    rights: Union[List[str], str] = Field(default_factory=list, description="Required rights")

    def to_permission(self) -> Permission:
        return Permission(self.target, self.rights)


class ProfileDocument(BaseModel):
    """Correlation profile in a role graph document."""
    application: str = Field(..., description="Application name")
    profile_class: Optional[str] = Field(None, description="Application profile class")
    filters: List[ConditionDocument] = Field(default_factory=list, description="Account attribute filters")
    permissions: List[PermissionDocument] = Field(default_factory=list, description="Required permissions")

    def to_profile(self) -> CorrelationProfile:
        return CorrelationProfile(
            application=self.application,
            profile_class=self.profile_class,
            filters=[f.to_condition() for f in self.filters],
            permissions=[p.to_permission() for p in self.permissions],
        )


class SelectorDocument(BaseModel):
    """Assignment selector in a role graph document."""
    rule: Optional[str] = Field(None, description="Registered rule name")
    conditions: List[ConditionDocument] = Field(default_factory=list, description="Identity attribute conditions")

    def to_selector(self) -> Selector:
        return Selector(rule=self.rule, conditions=[c.to_condition() for c in self.conditions])


class RoleDocument(BaseModel):
    """Role in a role graph document."""
    name: str = Field(..., description="Unique role name")
    id: Optional[str] = Field(None, description="Role id")
    type: Optional[str] = Field(None, description="Role type")
    description: Optional[str] = Field(None, description="Role description")
    disabled: bool = Field(False, description="Disabled roles pass through traversal")
    assignable: bool = Field(False, description="Can be assigned by the assignment pass")
    detectable: bool = Field(False, description="Can be detected from entitlements")
    assigned_detectable: bool = Field(False, description="Detected only when assigned, required or permitted")
    or_profiles: bool = Field(False, description="Any profile suffices instead of all")
    birthright: bool = Field(False, description="Birthright role")
    selector: Optional[SelectorDocument] = Field(None, description="Assignment selector")
    profiles: List[ProfileDocument] = Field(default_factory=list, description="Correlation profiles")
    inheritance: List[str] = Field(default_factory=list, description="Parent role names")
    requirements: List[str] = Field(default_factory=list, description="Required role names")
    permits: List[str] = Field(default_factory=list, description="Permitted role names")

    def to_role(self) -> Role:
        return Role(
            name=self.name,
            id=self.id,
            type=self.type,
            description=self.description,
            disabled=self.disabled,
            assignable=self.assignable,
            detectable=self.detectable,
            assigned_detectable=self.assigned_detectable,
            or_profiles=self.or_profiles,
            birthright=self.birthright,
            selector=self.selector.to_selector() if self.selector else None,
            profiles=[p.to_profile() for p in self.profiles],
            inheritance=list(self.inheritance),
            requirements=list(self.requirements),
            permits=list(self.permits),
        )


class RoleGraphDocument(BaseModel):
    """Top level of a role graph document."""
    roles: List[RoleDocument] = Field(default_factory=list, description="Roles of the hierarchy")


@trace_function("correlation.load_role_graph")
def load_role_graph(source: Union[str, Mapping[str, Any]]) -> InMemoryRoleGraph:
    """
    Load and validate a role graph from a YAML file path or a parsed mapping.

    Raises RoleGraphValidationError for malformed documents and
    CyclicRoleGraphError for inheritance cycles.
    """
    if isinstance(source, Mapping):
        data = source
    else:
        with open(source, "r") as f:
            data = yaml.safe_load(f) or {}

    try:
        document = RoleGraphDocument.model_validate(data)
    except ValidationError as e:
        raise RoleGraphValidationError("Invalid role graph document",
                                       {"errors": e.errors(include_url=False)}) from e

    names = [r.name for r in document.roles]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise RoleGraphValidationError("Duplicate role names", {"roles": duplicates})

    graph = InMemoryRoleGraph(r.to_role() for r in document.roles)
    graph.validate()
    logger.info("Role graph loaded", roles=graph.size())
    return graph
