"""
Unit tests for per-pass correlation state.
"""

import pytest

from service_correlation.app.correlation.models import Account, Role
from service_correlation.app.correlation.state import CorrelationState, Mode


class TestCorrelationState:
    """Test cases for CorrelationState."""

    @pytest.fixture
    def role(self):
        return Role(name="LDAP Developers", detectable=True)

    @pytest.fixture
    def account(self):
        return Account(application="LDAP", native_identity="uid=jdoe")

    def test_verdicts_are_per_mode(self, role):
        """Test assignment and detection verdicts are kept apart."""
        state = CorrelationState()
        state.set_matched(role, True, Mode.DETECTING)

        assert state.has_been_evaluated(role, Mode.DETECTING)
        assert state.is_matching(role, Mode.DETECTING)
        assert not state.has_been_evaluated(role, Mode.ASSIGNING)
        assert not state.is_matching(role, Mode.ASSIGNING)

    def test_set_matched_does_not_add_result(self, role):
        """Test a verdict alone does not make a result."""
        state = CorrelationState()
        state.set_matched(role, True, Mode.DETECTING)

        assert state.detected_roles == []
        state.add_match(role, Mode.DETECTING)
        state.add_match(role, Mode.DETECTING)
        assert [r.name for r in state.detected_roles] == ["LDAP Developers"]

    def test_states_are_keyed_by_name(self):
        """Test a candidate role without id shares state with the same name."""
        state = CorrelationState()
        state.set_matched(Role(name="Sales", id="r1"), True, Mode.ASSIGNING)

        assert state.is_matching(Role(name="Sales"), Mode.ASSIGNING)

    def test_detectable_on_assigned_only_is_sticky(self):
        """Test the flag is never cleared once set."""
        role = Role(name="Special", assigned_detectable=True)
        state = CorrelationState()

        state.set_matched(role, True, Mode.DETECTING, silent=True)
        assert not state.get_role_state(role).detectable_on_assigned_only

        state.set_matched(role, True, Mode.DETECTING, silent=False)
        state.set_matched(role, True, Mode.DETECTING, silent=True)
        assert state.get_role_state(role).detectable_on_assigned_only

    def test_matched_entitlements(self, role, account):
        """Test consumed values are recorded per role."""
        state = CorrelationState()
        state.add_matched_attributes(role, account, {"groups": ["developers"]})

        matched = state.get_matched_entitlements(role)
        assert matched.get("LDAP", None, "uid=jdoe").attributes == {"groups": ["developers"]}
        assert state.get_matched_entitlements(Role(name="Unknown")) is None

    def test_merge(self, role, account):
        """Test merging two passes."""
        other_role = Role(name="DB Readers")
        first = CorrelationState()
        first.set_matched(role, True, Mode.DETECTING)
        first.add_match(role, Mode.DETECTING)
        first.add_matched_attributes(role, account, {"groups": ["developers"]})

        second = CorrelationState()
        second.set_matched(role, True, Mode.DETECTING)
        second.add_match(role, Mode.DETECTING)
        second.add_matched_attributes(role, account, {"groups": ["staff"]})
        second.set_matched(other_role, True, Mode.DETECTING)
        second.add_match(other_role, Mode.DETECTING)

        merged = CorrelationState().merge(first).merge(second)

        assert [r.name for r in merged.detected_roles] == ["LDAP Developers", "DB Readers"]
        groups = merged.get_matched_entitlements(role).get("LDAP", None, "uid=jdoe").attributes["groups"]
        assert groups == ["developers", "staff"]
        # sources are untouched
        assert first.get_matched_entitlements(role).get("LDAP", None, "uid=jdoe").attributes["groups"] == ["developers"]
