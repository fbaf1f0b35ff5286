"""
Unit tests for the in-memory role graph and its loader.
"""

import os

import pytest

from service_correlation.app.correlation.conditions import ConditionOperator
from service_correlation.app.correlation.graph import InMemoryRoleGraph, load_role_graph
from service_correlation.app.correlation.models import Role, RoleAssignment
from shared.errors import CyclicRoleGraphError, MissingReferenceError, RoleGraphValidationError

FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "fixtures")


class TestInMemoryRoleGraph:
    """Test cases for InMemoryRoleGraph."""

    @pytest.fixture
    def hierarchy(self):
        return InMemoryRoleGraph([
            Role(name="Staff", detectable=True),
            Role(name="Developers", detectable=True, inheritance=["Staff"]),
            Role(name="Senior Developers", detectable=True, assigned_detectable=True,
                 inheritance=["Developers"]),
            Role(name="Contractors", assignable=False),
            Role(name="Contract Developers", detectable=True, inheritance=["Contractors"]),
        ])

    def test_parents_and_children(self, hierarchy):
        """Test edges built from inheritance."""
        developers = hierarchy.get_role_by_name("Developers")

        assert [r.name for r in hierarchy.get_parents(developers)] == ["Staff"]
        assert [r.name for r in hierarchy.get_children(developers)] == ["Senior Developers"]

    def test_unresolved_parent_is_skipped(self):
        """Test a parent name that does not resolve."""
        graph = InMemoryRoleGraph([Role(name="Orphan", inheritance=["Missing"])])

        assert graph.get_parents(graph.get_role_by_name("Orphan")) == []

    def test_least_specific_detectable_roles(self, hierarchy):
        """Test roots of unguided detection."""
        names = [r.name for r in hierarchy.get_detectable_roles()]

        # Contract Developers qualifies because its parent is not detectable
        assert names == ["Staff", "Contract Developers"]

    def test_least_specific_assignable_roles(self):
        """Test roots of the assignment pass."""
        graph = InMemoryRoleGraph([
            Role(name="Employee", assignable=True),
            Role(name="Manager", assignable=True, inheritance=["Employee"]),
            Role(name="Birthright", birthright=True),
        ])

        assert [r.name for r in graph.get_assignable_roles()] == ["Employee"]
        assert [r.name for r in graph.get_birthright_roles()] == ["Birthright"]

    def test_lookup_by_id_then_name(self, engineering_graph):
        """Test role resolution."""
        assert engineering_graph.get_role("it-db").name == "DB Readers"
        assert engineering_graph.find_role("it-db", "Old Name").name == "DB Readers"
        assert engineering_graph.find_role(None, "Admin Access").id == "it-admin"
        assert engineering_graph.find_role("missing", "missing") is None

    def test_require_role(self, engineering_graph):
        """Test required lookups fail on unresolved roles."""
        assert engineering_graph.require_role(None, "DB Readers").id == "it-db"

        with pytest.raises(MissingReferenceError) as exc_info:
            engineering_graph.require_role("missing", "Gone")

        assert exc_info.value.code == "MISSING_REFERENCE"
        assert exc_info.value.details["reference"] == "Gone"

    def test_required_or_permitted(self, engineering_graph):
        """Test requirements come before permits."""
        engineering = engineering_graph.get_role_by_name("Engineering")

        assert engineering_graph.get_required_or_permitted_names(engineering) == ["LDAP Developers", "DB Readers"]

    def test_required_or_permitted_through_inheritance(self):
        """Test requirements of parents are included."""
        graph = InMemoryRoleGraph([
            Role(name="Base", requirements=["Mail"]),
            Role(name="Engineering", inheritance=["Base"], requirements=["VPN"]),
            Role(name="Mail", detectable=True),
            Role(name="VPN", detectable=True),
        ])

        names = graph.get_required_or_permitted_names(graph.get_role_by_name("Engineering"))

        assert names == ["Mail", "VPN"]

    def test_detectable_roles_for_assignment(self):
        """Test roles walked by a guided detection."""
        graph = InMemoryRoleGraph([
            Role(name="P", detectable=True),
            Role(name="B", detectable=True, inheritance=["P"], requirements=["I1", "I3"], permits=["I2"]),
            Role(name="I1", detectable=True),
            Role(name="I2", assigned_detectable=True),
            Role(name="I3"),
        ])

        roles = graph.get_detectable_roles_for_assignment(RoleAssignment(role_name="B"))

        assert [r.name for r in roles] == ["I1", "I2", "B", "P"]

    def test_detectable_roles_for_unresolved_assignment(self, engineering_graph):
        """Test an assignment of an unknown role."""
        assert engineering_graph.get_detectable_roles_for_assignment(RoleAssignment(role_name="Gone")) == []

    def test_validate_detects_cycles(self):
        """Test inheritance cycles fail validation."""
        graph = InMemoryRoleGraph([
            Role(name="A", inheritance=["C"]),
            Role(name="B", inheritance=["A"]),
            Role(name="C", inheritance=["B"]),
        ])

        with pytest.raises(CyclicRoleGraphError) as exc_info:
            graph.validate()

        assert exc_info.value.code == "CYCLIC_ROLE_GRAPH"
        assert exc_info.value.path[0] == exc_info.value.path[-1]

    def test_least_specific_detects_cycles(self):
        """Test root computation on an unvalidated cyclic graph."""
        graph = InMemoryRoleGraph([
            Role(name="A", assignable=True, inheritance=["B"]),
            Role(name="B", assignable=True, inheritance=["A"]),
        ])

        with pytest.raises(CyclicRoleGraphError):
            graph.get_assignable_roles()

    def test_with_candidates(self, engineering_graph):
        """Test candidate roles overlay the graph by name."""
        candidate = Role(name="Admin Access", detectable=False)
        overlay = engineering_graph.with_candidates([candidate, Role(name="Sales", assignable=True)])

        assert overlay.size() == 5
        assert overlay.get_role_by_name("Admin Access") is candidate
        assert engineering_graph.size() == 4
        assert engineering_graph.get_role_by_name("Admin Access").detectable


class TestLoadRoleGraph:
    """Test cases for loading role graph documents."""

    def test_load_yaml_file(self):
        """Test loading the fixture document."""
        graph = load_role_graph(os.path.join(FIXTURES_DIR, "role_graph.yaml"))

        assert graph.size() == 4
        engineering = graph.get_role_by_name("Engineering")
        assert engineering.assignable
        assert engineering.selector.conditions[0].operator == ConditionOperator.EQUALS
        assert engineering.requirements == ["LDAP Developers"]

        db = graph.get_role("it-db")
        assert db.profiles[0].filters[0].value == ["reader"]
        assert db.profiles[0].permissions[0].rights == ["read"]

    def test_load_mapping(self):
        """Test loading an already parsed document."""
        graph = load_role_graph({"roles": [{"name": "A", "assignable": True},
                                           {"name": "B", "inheritance": ["A"]}]})

        assert [r.name for r in graph.get_children(graph.get_role_by_name("A"))] == ["B"]

    def test_invalid_document(self):
        """Test schema errors."""
        with pytest.raises(RoleGraphValidationError) as exc_info:
            load_role_graph({"roles": [{"assignable": True}]})

        assert exc_info.value.code == "ROLE_GRAPH_VALIDATION_ERROR"
        assert exc_info.value.details["errors"]

    def test_invalid_operator(self):
        """Test unknown condition operators are rejected."""
        document = {"roles": [{"name": "A", "selector": {"conditions": [
            {"field": "department", "operator": "like", "value": "Eng"}]}}]}

        with pytest.raises(RoleGraphValidationError):
            load_role_graph(document)

    def test_duplicate_names(self):
        """Test duplicate role names are rejected."""
        with pytest.raises(RoleGraphValidationError) as exc_info:
            load_role_graph({"roles": [{"name": "A"}, {"name": "A"}]})

        assert exc_info.value.details["roles"] == ["A"]

    def test_cyclic_document(self):
        """Test cycles are rejected at load time."""
        with pytest.raises(CyclicRoleGraphError):
            load_role_graph({"roles": [{"name": "A", "inheritance": ["B"]},
                                       {"name": "B", "inheritance": ["A"]}]})
