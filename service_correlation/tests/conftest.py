"""
Shared fixtures for correlation tests.
"""

import os
import sys

import pytest

# Add repository root to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_correlation.app.correlation.conditions import ConditionOperator, MatchCondition
from service_correlation.app.correlation.correlator import Correlator
from service_correlation.app.correlation.graph import InMemoryRoleGraph
from service_correlation.app.correlation.models import (
    Account, CorrelationProfile, Identity, Role, Selector
)
from service_correlation.app.correlation.selectors import RuleSelectorEvaluator
from service_correlation.app.correlation.session import EvaluationOptions


def ldap_profile(*groups):
    return CorrelationProfile(
        application="LDAP",
        filters=[MatchCondition(field="groups", operator=ConditionOperator.IN, value=list(groups))],
    )


def db_profile(*roles):
    return CorrelationProfile(
        application="DB",
        filters=[MatchCondition(field="roles", operator=ConditionOperator.IN, value=list(roles))],
    )


def department_selector(department):
    return Selector(conditions=[MatchCondition(field="department", value=department)])


@pytest.fixture
def engineering_roles():
    """Business role requiring and permitting IT roles, plus an unrelated IT role."""
    return [
        Role(name="Engineering", id="b-eng", type="business", assignable=True,
             selector=department_selector("Engineering"),
             requirements=["LDAP Developers"], permits=["DB Readers"]),
        Role(name="LDAP Developers", id="it-ldap", type="it", detectable=True,
             profiles=[ldap_profile("developers")]),
        Role(name="DB Readers", id="it-db", type="it", detectable=True,
             profiles=[db_profile("reader")]),
        Role(name="Admin Access", id="it-admin", type="it", detectable=True,
             profiles=[ldap_profile("admins")]),
    ]


@pytest.fixture
def engineering_graph(engineering_roles):
    return InMemoryRoleGraph(engineering_roles).validate()


@pytest.fixture
def ldap_account():
    return Account(application="LDAP", native_identity="uid=jdoe",
                   attributes={"groups": ["developers", "admins", "staff"]})


@pytest.fixture
def db_account():
    return Account(application="DB", native_identity="jdoe", attributes={"roles": ["reader"]})


@pytest.fixture
def hr_account():
    return Account(application="HR", native_identity="E1001", attributes={})


@pytest.fixture
def jdoe(ldap_account, db_account, hr_account):
    return Identity(name="jdoe", attributes={"department": "Engineering"},
                    accounts=[ldap_account, db_account, hr_account])


@pytest.fixture
def selector_evaluator():
    return RuleSelectorEvaluator()


@pytest.fixture
def correlator(engineering_graph, selector_evaluator):
    return Correlator(engineering_graph, selector_evaluator)


@pytest.fixture
def no_assignment():
    return EvaluationOptions(do_role_assignment=False)
