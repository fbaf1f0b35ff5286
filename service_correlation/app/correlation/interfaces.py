"""
Collaborator interfaces consumed by the correlator.

The role graph, account source and selector evaluator are owned outside the
engine. Implementations must be safe to share read-only across evaluation
sessions; the role graph must not change while an identity is evaluated.
"""

from typing import List, Optional

from shared.errors import MissingReferenceError

from .models import Account, CorrelationProfile, Identity, Role, RoleAssignment, Selector


class RoleGraph:
    """Read-only view of the role hierarchy."""

    def get_role(self, role_id: str) -> Optional[Role]:
        raise NotImplementedError

    def get_role_by_name(self, name: str) -> Optional[Role]:
        raise NotImplementedError

    def get_parents(self, role: Role) -> List[Role]:
        raise NotImplementedError

    def get_children(self, role: Role) -> List[Role]:
        raise NotImplementedError

    def get_assignable_roles(self) -> List[Role]:
        """Least-specific assignable roles: traversal roots of the assignment pass."""
        raise NotImplementedError

    def get_detectable_roles(self) -> List[Role]:
        """Least-specific detectable roles: traversal roots of unguided detection."""
        raise NotImplementedError

    def get_birthright_roles(self) -> List[Role]:
        raise NotImplementedError

    def get_detectable_roles_for_assignment(self, assignment: RoleAssignment) -> List[Role]:
        """Roles to walk during detection guided by one assignment."""
        raise NotImplementedError

    def get_required_or_permitted_names(self, role: Role) -> List[str]:
        raise NotImplementedError

    def size(self) -> int:
        raise NotImplementedError

    def with_candidates(self, candidates: List[Role]) -> "RoleGraph":
        """A graph overlaying hypothetical roles by name."""
        raise NotImplementedError

    def find_role(self, role_id: Optional[str], role_name: Optional[str]) -> Optional[Role]:
        """Resolve by id first, then by name."""
        role = self.get_role(role_id) if role_id else None
        if role is None and role_name:
            role = self.get_role_by_name(role_name)
        return role

    def require_role(self, role_id: Optional[str], role_name: Optional[str]) -> Role:
        """Like find_role, for callers that cannot skip an unresolved role."""
        role = self.find_role(role_id, role_name)
        if role is None:
            raise MissingReferenceError("role", role_name or role_id or "", {"role_id": role_id})
        return role


class AccountSource:
    """Provides candidate accounts for a correlation profile."""

    def get_accounts(self, identity: Identity, profile: CorrelationProfile) -> List[Account]:
        raise NotImplementedError


class SelectorEvaluator:
    """Evaluates an assignment selector against an identity. May raise."""

    def evaluate(self, selector: Selector, identity: Identity, role_name: Optional[str] = None) -> bool:
        raise NotImplementedError
