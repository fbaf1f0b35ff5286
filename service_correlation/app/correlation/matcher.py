"""
Hierarchy and profile matching for one traversal pass.

The walk is top-down from a starting role. A role matches when its own
predicate holds (selector when assigning, correlation profiles when
detecting) and every ancestor also matches. Each role's predicate runs at
most once per pass and mode; later visits read the memoized verdict from
the pass's CorrelationState.

Disabled roles are treated as matched so that their children still
inherit from the roles above them, but they are never added to the
results.
"""

from typing import List, Optional, Tuple

from shared.errors import CyclicRoleGraphError, SelectorEvaluationError
from shared.logging import get_logger

from .conditions import evaluate_condition
from .models import Account, CorrelationProfile, Role, RoleTarget
from .session import EvaluationSession, TraversalContext

logger = get_logger("correlation.matcher")


class HierarchyMatcher:
    """Walks the role hierarchy for a single pass."""

    def __init__(self, session: EvaluationSession, context: TraversalContext):
        self.session = session
        self.context = context
        self.graph = session.graph
        self.state = context.state
        self.mode = context.mode

    def evaluate_top_down(self, role: Role, target_role: Optional[Role] = None,
                          path: Tuple[str, ...] = ()) -> bool:
        """
        Evaluate a branch and return True if this role or any role beneath
        it was matched.

        target_role is the role whose account context is presented when a
        role's own profiles find no candidate accounts.
        """
        if role.name in path:
            raise CyclicRoleGraphError(list(path) + [role.name])

        if not self.is_matching(role, target_role):
            return False

        # Multiple inheritance: every ancestor must match too
        if not self.evaluate_supers_bottom_up(role, target_role, (role.name,)):
            return False

        children = self.graph.get_children(role)
        if not children:
            return self.add_match_if_allowed(role)

        # the whole subtree is visited, no stopping on the first match
        something_matched = False
        for child in children:
            if self.evaluate_top_down(child, target_role, path + (role.name,)):
                something_matched = True

        if not something_matched:
            something_matched = self.add_match_if_allowed(role)
        return something_matched

    def evaluate_supers_bottom_up(self, role: Role, target_role: Optional[Role],
                                  path: Tuple[str, ...]) -> bool:
        """Return whether every ancestor of the role matches."""
        for parent in self.graph.get_parents(role):
            if parent.name in path:
                raise CyclicRoleGraphError(list(path) + [parent.name])
            if not self.is_matching(parent, target_role):
                return False
            if not self.evaluate_supers_bottom_up(parent, target_role, path + (parent.name,)):
                return False
        return True

    def add_match_if_allowed(self, role: Role) -> bool:
        """Add a matched role to the pass results unless it cannot be a result by itself."""
        if role.disabled:
            return False

        if self.context.detecting:
            matched = role.has_profiles()
        else:
            matched = role.has_selector() and (role.assignable or role.birthright)
            # candidate roles without an id cannot have assignments yet
            if matched and role.id is not None and self.session.identity.has_negative_assignment(role.name):
                logger.debug("Negative assignment suppresses role", role=role.name)
                matched = False

        if matched:
            self.state.add_match(role, self.mode)
        return matched

    def is_matching(self, role: Role, target_role: Optional[Role] = None) -> bool:
        """Evaluate a role's own predicate, memoized per pass and mode."""
        if self.state.has_been_evaluated(role, self.mode):
            return self.state.is_matching(role, self.mode)

        self.session.count_role_considered()

        if role.disabled:
            # disabled roles do not logically exist in the hierarchy
            match = True
            logger.debug("Implied matching of disabled role", role=role.name)
        elif self.context.detecting:
            match = self._is_matching_profiles(role, target_role)
        else:
            match = self._is_matching_selector(role)

        silent = role.assigned_detectable and not self.session.is_assigned_or_required_or_permitted(role)
        self.state.set_matched(role, match, self.mode, silent)
        return match

    def _is_matching_selector(self, role: Role) -> bool:
        if not role.has_selector():
            logger.debug("Matched role with no selector", role=role.name)
            return True

        self.session.count_selector_evaluated()
        try:
            match = self.session.selector_evaluator.evaluate(role.selector, self.session.identity, role.name)
        except SelectorEvaluationError:
            raise
        except Exception as e:
            raise SelectorEvaluationError(role.name, str(e)) from e

        if match:
            logger.info("Matched role selector", role=role.name)
        return bool(match)

    def _is_matching_profiles(self, role: Role, target_role: Optional[Role]) -> bool:
        if not role.has_profiles():
            logger.debug("Matched role with no profiles", role=role.name)
            return True

        profiles_matched = 0
        for profile in role.profiles:
            accounts = self.get_matching_accounts(role, profile)
            if target_role is not None and not accounts:
                # inherited roles see the target role's account context
                accounts = self.get_matching_accounts(target_role, profile)
            for account in accounts:
                self.session.count_selector_evaluated()
                if self.is_matching_profile(role, profile, account):
                    profiles_matched += 1
                    break

        match = profiles_matched == len(role.profiles) or (role.or_profiles and profiles_matched > 0)
        if match:
            logger.info("Matched role with profiles", role=role.name)
        return match

    def get_matching_accounts(self, role: Role, profile: CorrelationProfile) -> List[Account]:
        accounts = self.session.load_accounts(profile)
        return self.filter_accounts_for_targets(accounts, role)

    def filter_accounts_for_targets(self, accounts: List[Account], role: Role) -> List[Account]:
        """
        Restrict candidate accounts to the targets of the guiding assignment
        or detection. Targets naming this role take priority over generic
        targets. Accounts are assumed to share one application.
        """
        targets: List[RoleTarget] = self.context.guided_targets
        if not targets or not accounts:
            return accounts

        first = accounts[0]
        role_specific = []
        generic = []
        for target in targets:
            if not target.matches_application(first.application, first.instance):
                continue
            if not target.role_name:
                generic.append(target)
            elif target.role_name == role.name:
                role_specific.append(target)

        chosen = role_specific or generic
        native_identities = {t.native_identity for t in chosen}
        return [a for a in accounts if a.native_identity in native_identities]

    def is_matching_profile(self, role: Role, profile: CorrelationProfile, account: Account) -> bool:
        """
        Return True if the account satisfies the profile, recording the
        attribute values and permissions that were consumed.

        Every filter is evaluated even after one fails, so values matched
        by the others are still recorded.
        """
        filters_match = True
        for condition in profile.filters:
            matched, values = evaluate_condition(condition, account.attributes)
            if not matched:
                logger.debug("Profile filter does not match", role=role.name, filter=str(condition))
                filters_match = False
            elif values:
                self.state.add_matched_attributes(role, account, {condition.field: values})

        permissions_match = True
        for required in profile.permissions:
            remaining = list(required.rights)
            # rights may be split over several permissions on the same target
            for permission in account.permissions:
                if permission.target == required.target:
                    remaining = [r for r in remaining if r not in permission.rights]
                    if not remaining:
                        break

            if remaining:
                logger.debug("Required permission not satisfied", role=role.name,
                             target=required.target, missing=remaining)
                permissions_match = False
            else:
                self.state.add_matched_permission(role, account, required)

        return filters_match and permissions_match
