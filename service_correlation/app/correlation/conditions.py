"""
Attribute conditions shared by correlation profile filters and selectors.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from shared.logging import get_logger

logger = get_logger("correlation.conditions")


class ConditionOperator(str, Enum):
    """Condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    CONTAINS_ALL = "contains_all"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


@dataclass
class MatchCondition:
    """A single attribute condition."""
    field: str
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Union[str, int, float, List[Union[str, int, float]], None] = None
    description: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.operator, ConditionOperator):
            self.operator = ConditionOperator(self.operator)

    def __str__(self) -> str:
        return f"{self.field} {self.operator.value} {self.value!r}"


def as_values(value: Any) -> List[Any]:
    """Normalize a scalar or multi-valued attribute into a list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def get_field_value(field: str, attributes: Dict[str, Any]) -> Any:
    """Get a field value from an attribute map, following dotted paths."""
    if field in attributes:
        return attributes[field]

    # Check nested fields (e.g., "manager.department")
    if "." in field:
        value: Any = attributes
        for part in field.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return None
        return value

    return None


def _distinct(values: List[Any]) -> List[Any]:
    seen: List[Any] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def evaluate_condition(condition: MatchCondition, attributes: Dict[str, Any]) -> Tuple[bool, List[Any]]:
    """
    Evaluate a condition against an attribute map.

    Returns whether the condition holds and the attribute values that
    satisfied it. Negative operators never consume values.
    """
    raw = get_field_value(condition.field, attributes)
    if raw is None:
        return False, []

    values = as_values(raw)
    expected = condition.value
    operator = condition.operator

    if operator == ConditionOperator.EQUALS:
        matched = [v for v in values if v == expected]
        return bool(matched), matched[:1]

    elif operator == ConditionOperator.NOT_EQUALS:
        return all(v != expected for v in values), []

    elif operator == ConditionOperator.IN:
        wanted = as_values(expected)
        matched = _distinct([v for v in values if v in wanted])
        return bool(matched), matched

    elif operator == ConditionOperator.NOT_IN:
        wanted = as_values(expected)
        return not any(v in wanted for v in values), []

    elif operator == ConditionOperator.CONTAINS:
        matched = _distinct([v for v in values if str(expected) in str(v)])
        return bool(matched), matched

    elif operator == ConditionOperator.CONTAINS_ALL:
        wanted = as_values(expected)
        if wanted and all(w in values for w in wanted):
            return True, _distinct(wanted)
        return False, []

    elif operator == ConditionOperator.STARTS_WITH:
        matched = _distinct([v for v in values if str(v).startswith(str(expected))])
        return bool(matched), matched

    elif operator == ConditionOperator.ENDS_WITH:
        matched = _distinct([v for v in values if str(v).endswith(str(expected))])
        return bool(matched), matched

    elif operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        matched = []
        for v in values:
            try:
                if operator == ConditionOperator.GREATER_THAN and v > expected:
                    matched.append(v)
                elif operator == ConditionOperator.LESS_THAN and v < expected:
                    matched.append(v)
            except TypeError:
                logger.debug("Incomparable condition value", condition=str(condition), value=v)
        return bool(matched), _distinct(matched)

    logger.warning("Unknown condition operator", operator=operator)
    return False, []


def evaluate_conditions(conditions: List[MatchCondition], attributes: Dict[str, Any]) -> bool:
    """Return True when every condition holds (AND semantics)."""
    for condition in conditions:
        matched, _ = evaluate_condition(condition, attributes)
        if not matched:
            return False
    return True
