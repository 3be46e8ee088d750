"""
Field conditions shared by trigger filters and access-control rules.

A condition compares the value at a dotted path (`args.amount`) against
an expected value. Comparisons between incompatible types are False,
never an error.
"""

from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


class Condition(BaseModel):
    field: str
    operator: ConditionOperator = ConditionOperator.EQ
    value: Any = None

    def matches(self, data: Any) -> bool:
        return compare(self.operator, field_value(data, self.field), self.value)


def field_value(data: Any, path: str) -> Any:
    """Walk `a.b.c` through mappings and attributes; None when any hop is missing."""
    value = data
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    try:
        if operator == ConditionOperator.EQ:
            return actual == expected
        if operator == ConditionOperator.NE:
            return actual != expected
        if operator == ConditionOperator.GT:
            return actual is not None and actual > expected
        if operator == ConditionOperator.GTE:
            return actual is not None and actual >= expected
        if operator == ConditionOperator.LT:
            return actual is not None and actual < expected
        if operator == ConditionOperator.LTE:
            return actual is not None and actual <= expected
        if operator == ConditionOperator.IN:
            return isinstance(expected, (list, tuple, set, frozenset)) and actual in expected
        if operator == ConditionOperator.CONTAINS:
            if actual is None:
                return False
            if isinstance(actual, (list, tuple, set, frozenset)):
                return expected in actual
            return str(expected) in str(actual)
    except TypeError:
        return False
    return False


def all_match(conditions: Iterable[Condition], data: Any) -> bool:
    """An empty condition list always matches."""
    return all(c.matches(data) for c in conditions)
