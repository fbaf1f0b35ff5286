"""
Unit tests for hierarchy matching.
"""

from unittest.mock import MagicMock

import pytest

from service_correlation.app.correlation.accounts import IdentityAccountSource
from service_correlation.app.correlation.conditions import ConditionOperator, MatchCondition
from service_correlation.app.correlation.entitlements import Permission
from service_correlation.app.correlation.graph import InMemoryRoleGraph
from service_correlation.app.correlation.interfaces import SelectorEvaluator
from service_correlation.app.correlation.matcher import HierarchyMatcher
from service_correlation.app.correlation.models import (
    Account, CorrelationProfile, Identity, Role, RoleAssignment, RoleTarget, Selector
)
from service_correlation.app.correlation.session import EvaluationSession, TraversalContext
from service_correlation.app.correlation.state import CorrelationState, Mode
from shared.errors import CyclicRoleGraphError, SelectorEvaluationError

from conftest import ldap_profile


def make_matcher(graph, identity, mode, evaluator=None, **context):
    session = EvaluationSession(identity, graph, evaluator or MagicMock(spec=SelectorEvaluator),
                                IdentityAccountSource())
    return HierarchyMatcher(session, TraversalContext(mode, CorrelationState(), **context))


class TestAssigningTraversal:
    """Test cases for selector matching."""

    @pytest.fixture
    def identity(self):
        return Identity(name="jdoe", attributes={"department": "Engineering"})

    @pytest.fixture
    def diamond(self):
        return InMemoryRoleGraph([
            Role(name="Top"),
            Role(name="Left", assignable=True, selector=Selector(rule="left"), inheritance=["Top"]),
            Role(name="Right", assignable=True, selector=Selector(rule="right"), inheritance=["Top"]),
            Role(name="Bottom", assignable=True, selector=Selector(rule="bottom"), inheritance=["Left", "Right"]),
        ])

    def test_each_selector_evaluated_once(self, diamond, identity):
        """Test a role reached on two paths is evaluated once."""
        evaluator = MagicMock(spec=SelectorEvaluator)
        evaluator.evaluate.return_value = True
        matcher = make_matcher(diamond, identity, Mode.ASSIGNING, evaluator)

        matched = matcher.evaluate_top_down(diamond.get_role_by_name("Top"))

        assert matched is True
        assert evaluator.evaluate.call_count == 3
        assert sorted(c.args[2] for c in evaluator.evaluate.call_args_list) == ["Bottom", "Left", "Right"]
        assert [r.name for r in matcher.state.assigned_roles] == ["Bottom"]
        assert matcher.session.stats.roles_considered == 4

    def test_multiple_inheritance_requires_every_parent(self, diamond, identity):
        """Test a child is not matched when one of its parents fails."""
        evaluator = MagicMock(spec=SelectorEvaluator)
        evaluator.evaluate.side_effect = lambda selector, ident, role_name=None: role_name != "Right"
        matcher = make_matcher(diamond, identity, Mode.ASSIGNING, evaluator)

        matcher.evaluate_top_down(diamond.get_role_by_name("Top"))

        assert [r.name for r in matcher.state.assigned_roles] == ["Left"]

    def test_subtree_completeness(self, identity):
        """Test the deepest matching role replaces its ancestor."""
        graph = InMemoryRoleGraph([
            Role(name="R", assignable=True, selector=Selector(rule="r")),
            Role(name="C1", assignable=True, selector=Selector(rule="c1"), inheritance=["R"]),
            Role(name="C2", assignable=True, selector=Selector(rule="c2"), inheritance=["R"]),
        ])
        evaluator = MagicMock(spec=SelectorEvaluator)
        evaluator.evaluate.side_effect = lambda selector, ident, role_name=None: role_name in ("R", "C2")
        matcher = make_matcher(graph, identity, Mode.ASSIGNING, evaluator)

        matcher.evaluate_top_down(graph.get_role_by_name("R"))

        assert [r.name for r in matcher.state.assigned_roles] == ["C2"]

    def test_parent_matched_when_no_child_matches(self, identity):
        """Test falling back to the role itself."""
        graph = InMemoryRoleGraph([
            Role(name="R", assignable=True, selector=Selector(rule="r")),
            Role(name="C1", assignable=True, selector=Selector(rule="c1"), inheritance=["R"]),
        ])
        evaluator = MagicMock(spec=SelectorEvaluator)
        evaluator.evaluate.side_effect = lambda selector, ident, role_name=None: role_name == "R"
        matcher = make_matcher(graph, identity, Mode.ASSIGNING, evaluator)

        assert matcher.evaluate_top_down(graph.get_role_by_name("R")) is True
        assert [r.name for r in matcher.state.assigned_roles] == ["R"]

    def test_negative_assignment_suppresses_match(self):
        """Test a negatively assigned role is not matched."""
        graph = InMemoryRoleGraph([Role(name="R", id="r1", assignable=True, selector=Selector(rule="r"))])
        identity = Identity(name="jdoe", role_assignments=[RoleAssignment(role_name="R", role_id="r1",
                                                                          negative=True, source="manual")])
        evaluator = MagicMock(spec=SelectorEvaluator)
        evaluator.evaluate.return_value = True
        matcher = make_matcher(graph, identity, Mode.ASSIGNING, evaluator)

        assert matcher.evaluate_top_down(graph.get_role_by_name("R")) is False
        assert matcher.state.assigned_roles == []

    def test_role_without_selector_is_not_a_result(self, identity):
        """Test an assignable role with no selector only passes through."""
        graph = InMemoryRoleGraph([Role(name="Employee", assignable=True)])
        matcher = make_matcher(graph, identity, Mode.ASSIGNING)

        assert matcher.evaluate_top_down(graph.get_role_by_name("Employee")) is False
        assert matcher.state.is_matching(graph.get_role_by_name("Employee"), Mode.ASSIGNING)

    def test_selector_failure_is_wrapped(self, identity):
        """Test evaluator exceptions surface as SelectorEvaluationError."""
        graph = InMemoryRoleGraph([Role(name="R", assignable=True, selector=Selector(rule="r"))])
        evaluator = MagicMock(spec=SelectorEvaluator)
        evaluator.evaluate.side_effect = RuntimeError("rule engine down")
        matcher = make_matcher(graph, identity, Mode.ASSIGNING, evaluator)

        with pytest.raises(SelectorEvaluationError) as exc_info:
            matcher.evaluate_top_down(graph.get_role_by_name("R"))

        assert exc_info.value.details["role"] == "R"

    def test_cycle_raises(self, identity):
        """Test traversal of an unvalidated cyclic graph."""
        graph = InMemoryRoleGraph([
            Role(name="A", inheritance=["B"]),
            Role(name="B", inheritance=["A"]),
        ])
        matcher = make_matcher(graph, identity, Mode.ASSIGNING)

        with pytest.raises(CyclicRoleGraphError):
            matcher.evaluate_top_down(graph.get_role_by_name("A"))


class TestDetectingTraversal:
    """Test cases for correlation profile matching."""

    @pytest.fixture
    def ldap_a(self):
        return Account(application="LDAP", native_identity="uid=a", attributes={"groups": ["users"]})

    @pytest.fixture
    def ldap_b(self):
        return Account(application="LDAP", native_identity="uid=b", attributes={"groups": ["developers"]})

    @pytest.fixture
    def identity(self, ldap_a, ldap_b):
        return Identity(name="jdoe", accounts=[ldap_a, ldap_b])

    @pytest.fixture
    def graph(self):
        return InMemoryRoleGraph([Role(name="LDAP Developers", detectable=True,
                                       profiles=[ldap_profile("developers")])])

    def test_disabled_role_passes_through(self, identity):
        """Test a disabled parent neither blocks nor becomes a result."""
        graph = InMemoryRoleGraph([
            Role(name="Legacy", detectable=True, disabled=True, profiles=[ldap_profile("nobody")]),
            Role(name="LDAP Developers", detectable=True, inheritance=["Legacy"],
                 profiles=[ldap_profile("developers")]),
        ])
        matcher = make_matcher(graph, identity, Mode.DETECTING)

        assert matcher.evaluate_top_down(graph.get_role_by_name("Legacy")) is True
        assert [r.name for r in matcher.state.detected_roles] == ["LDAP Developers"]

    def test_disabled_leaf_is_not_a_result(self, identity):
        """Test a disabled role alone matches nothing."""
        graph = InMemoryRoleGraph([Role(name="Legacy", detectable=True, disabled=True,
                                        profiles=[ldap_profile("developers")])])
        matcher = make_matcher(graph, identity, Mode.DETECTING)

        assert matcher.evaluate_top_down(graph.get_role_by_name("Legacy")) is False
        assert matcher.state.detected_roles == []

    def test_matched_values_recorded(self, graph, identity):
        """Test consumed entitlements are recorded on the pass state."""
        role = graph.get_role_by_name("LDAP Developers")
        matcher = make_matcher(graph, identity, Mode.DETECTING)

        assert matcher.evaluate_top_down(role) is True
        matched = matcher.state.get_matched_entitlements(role)
        assert matched.keys() == [("LDAP", None, "uid=b")]
        assert matched.get("LDAP", None, "uid=b").attributes == {"groups": ["developers"]}

    def test_guided_targets_restrict_accounts(self, graph, identity):
        """Test a guided pass only looks at the assignment's targets."""
        role = graph.get_role_by_name("LDAP Developers")

        on_a = make_matcher(graph, identity, Mode.DETECTING, guided_assignment=RoleAssignment(
            role_name="Engineering", targets=[RoleTarget("LDAP", "uid=a")]))
        on_b = make_matcher(graph, identity, Mode.DETECTING, guided_assignment=RoleAssignment(
            role_name="Engineering", targets=[RoleTarget("LDAP", "uid=b")]))

        assert on_a.evaluate_top_down(role) is False
        assert on_b.evaluate_top_down(role) is True

    def test_role_specific_targets_take_priority(self, graph, identity, ldap_a, ldap_b):
        """Test targets naming the role win over generic targets."""
        role = graph.get_role_by_name("LDAP Developers")
        assignment = RoleAssignment(role_name="Engineering", targets=[
            RoleTarget("LDAP", "uid=a"),
            RoleTarget("LDAP", "uid=b", role_name="LDAP Developers"),
        ])
        matcher = make_matcher(graph, identity, Mode.DETECTING, guided_assignment=assignment)

        assert matcher.filter_accounts_for_targets([ldap_a, ldap_b], role) == [ldap_b]
        other = Role(name="Admin Access")
        assert matcher.filter_accounts_for_targets([ldap_a, ldap_b], other) == [ldap_a]

    def test_targets_on_other_application_exclude_accounts(self, graph, identity, ldap_a):
        """Test an empty target choice yields no accounts."""
        assignment = RoleAssignment(role_name="Engineering", targets=[RoleTarget("DB", "jdoe")])
        matcher = make_matcher(graph, identity, Mode.DETECTING, guided_assignment=assignment)

        assert matcher.filter_accounts_for_targets([ldap_a], graph.get_role_by_name("LDAP Developers")) == []

    def test_all_profiles_required(self, identity):
        """Test profiles are conjunctive unless or_profiles is set."""
        db_profile = CorrelationProfile(application="DB", filters=[
            MatchCondition("roles", ConditionOperator.IN, ["dba"])])
        strict = Role(name="Strict", detectable=True, profiles=[ldap_profile("developers"), db_profile])
        lenient = Role(name="Lenient", detectable=True, or_profiles=True,
                       profiles=[ldap_profile("developers"), db_profile])
        graph = InMemoryRoleGraph([strict, lenient])

        assert make_matcher(graph, identity, Mode.DETECTING).evaluate_top_down(strict) is False
        assert make_matcher(graph, identity, Mode.DETECTING).evaluate_top_down(lenient) is True

    def test_filter_values_recorded_when_another_filter_fails(self):
        """Test every filter is evaluated."""
        account = Account(application="LDAP", native_identity="uid=jdoe",
                          attributes={"groups": ["admins"], "location": "LA"})
        role = Role(name="NYC Admins", detectable=True, profiles=[CorrelationProfile(
            application="LDAP",
            filters=[MatchCondition("groups", ConditionOperator.IN, ["admins"]),
                     MatchCondition("location", ConditionOperator.EQUALS, "NYC")])])
        graph = InMemoryRoleGraph([role])
        matcher = make_matcher(graph, Identity(name="jdoe", accounts=[account]), Mode.DETECTING)

        assert matcher.evaluate_top_down(role) is False
        matched = matcher.state.get_matched_entitlements(role)
        assert matched.get("LDAP", None, "uid=jdoe").attributes == {"groups": ["admins"]}

    def test_permissions_split_over_records(self):
        """Test required rights may be spread over several permissions."""
        required = CorrelationProfile(application="DB", permissions=[Permission("/share", ["read", "write"])])
        role = Role(name="Share Writers", detectable=True, profiles=[required])
        graph = InMemoryRoleGraph([role])

        split = Account(application="DB", native_identity="jdoe", permissions=[
            Permission("/share", "read"), Permission("/share", ["write", "exec"])])
        partial = Account(application="DB", native_identity="jdoe", permissions=[Permission("/share", "read")])

        matcher = make_matcher(graph, Identity(name="jdoe", accounts=[split]), Mode.DETECTING)
        assert matcher.evaluate_top_down(role) is True
        assert matcher.state.get_matched_entitlements(role).get("DB", None, "jdoe").permissions == {
            "/share": ["read", "write"]}

        matcher = make_matcher(graph, Identity(name="jdoe", accounts=[partial]), Mode.DETECTING)
        assert matcher.evaluate_top_down(role) is False

    def test_ancestor_sees_target_role_accounts(self, identity):
        """Test an ancestor with no targeted accounts uses the target role's accounts."""
        staff = Role(name="Staff", detectable=True, profiles=[ldap_profile("developers")])
        developers = Role(name="LDAP Developers", detectable=True, inheritance=["Staff"],
                          profiles=[ldap_profile("developers")])
        graph = InMemoryRoleGraph([staff, developers])
        assignment = RoleAssignment(role_name="Engineering", targets=[
            RoleTarget("LDAP", "uid=b", role_name="LDAP Developers")])

        with_target = make_matcher(graph, identity, Mode.DETECTING, guided_assignment=assignment)
        without_target = make_matcher(graph, identity, Mode.DETECTING, guided_assignment=assignment)

        assert with_target.evaluate_top_down(developers, developers) is True
        assert without_target.evaluate_top_down(developers) is False
