"""
Selector evaluation.

The rule language is pluggable: named rules are registered callables
taking the identity and the name of the role being evaluated.
"""

from typing import Callable, Dict, Optional

from shared.errors import SelectorEvaluationError
from shared.logging import get_logger

from .conditions import evaluate_conditions
from .interfaces import SelectorEvaluator
from .models import Identity, Selector

logger = get_logger("correlation.selectors")

SelectorRule = Callable[[Identity, Optional[str]], bool]


class RuleSelectorEvaluator(SelectorEvaluator):
    """Evaluates selector conditions against identity attributes, then the named rule."""

    def __init__(self, rules: Optional[Dict[str, SelectorRule]] = None):
        self.rules: Dict[str, SelectorRule] = dict(rules or {})

    def register_rule(self, name: str, rule: SelectorRule):
        """Register a named rule."""
        self.rules[name] = rule
        logger.info("Selector rule registered", rule=name)

    def remove_rule(self, name: str) -> bool:
        """Remove a named rule."""
        if name in self.rules:
            del self.rules[name]
            return True
        return False

    def evaluate(self, selector: Selector, identity: Identity, role_name: Optional[str] = None) -> bool:
        if selector is None or selector.is_empty():
            return True

        if selector.conditions and not evaluate_conditions(selector.conditions, identity.attributes):
            return False

        if not selector.rule:
            return True

        rule = self.rules.get(selector.rule)
        if rule is None:
            raise SelectorEvaluationError(role_name or "", f"Unknown selector rule: {selector.rule}",
                                          {"rule": selector.rule})

        try:
            return bool(rule(identity, role_name))
        except Exception as e:
            raise SelectorEvaluationError(role_name or "", str(e), {"rule": selector.rule}) from e
