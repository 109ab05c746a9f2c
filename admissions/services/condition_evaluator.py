"""
Admissions Workflow Platform
Condition Evaluator — transition guard language.

A transition carries a list of ``{field, operator, value}`` entries. They are
decoded once into typed ``Condition`` objects (unknown operators are rejected
at decode time, so the workflow validator can refuse them before activation)
and then evaluated against an application context with AND semantics.

Absent-field policy:
    A field path that does not resolve yields ``ABSENT``. Against ``ABSENT``
    every operator is False except ``not_equals``, ``not_in_set``,
    ``not_contains`` and ``is_absent``, which are True. An explicit ``None``
    in the data is present and compares equal to ``None``.

Type policy:
    Ordering operators only compare numbers with numbers (booleans excluded)
    or strings with strings; anything else is False. Numeric strings are not
    coerced.

Usage:
    from admissions.services.condition_evaluator import evaluate, explain

    evaluate([{"field": "gpa", "operator": ">=", "value": 3.0}], {"gpa": 3.4})  # True
    explain(conditions, context)  # -> [ConditionFailure, ...] for the ones that failed
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


# ═══════════════════════════════════════════════════════════════════════════
#  Types
# ═══════════════════════════════════════════════════════════════════════════

class _Absent:
    """Sentinel for a field path that does not resolve in the context."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN_SET = "in_set"
    NOT_IN_SET = "not_in_set"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_PRESENT = "is_present"
    IS_ABSENT = "is_absent"


# Symbolic spellings stored by older workflow definitions
OPERATOR_ALIASES = {
    "=": Operator.EQUALS,
    "==": Operator.EQUALS,
    "!=": Operator.NOT_EQUALS,
    "<>": Operator.NOT_EQUALS,
    ">": Operator.GREATER_THAN,
    ">=": Operator.GREATER_THAN_OR_EQUAL,
    "<": Operator.LESS_THAN,
    "<=": Operator.LESS_THAN_OR_EQUAL,
    "in": Operator.IN_SET,
    "not_in": Operator.NOT_IN_SET,
}

# Operators that hold when the field is absent
_TRUE_ON_ABSENT = {
    Operator.NOT_EQUALS,
    Operator.NOT_IN_SET,
    Operator.NOT_CONTAINS,
    Operator.IS_ABSENT,
}

# Operators whose value is ignored
_UNARY = {Operator.IS_PRESENT, Operator.IS_ABSENT}


class ConditionParseError(ValueError):
    """Raised when a stored condition entry cannot be decoded."""

    def __init__(self, index: int, message: str):
        self.index = index
        super().__init__(f"condition[{index}]: {message}")


@dataclass(frozen=True)
class Condition:
    field: str
    operator: Operator
    value: Any = None

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}


@dataclass(frozen=True)
class ConditionFailure:
    """One failed condition with the value it was checked against."""

    field: str
    operator: str
    expected: Any
    actual: Any

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "operator": self.operator,
            "expected": self.expected,
            "actual": None if self.actual is ABSENT else self.actual,
            "absent": self.actual is ABSENT,
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Decoding
# ═══════════════════════════════════════════════════════════════════════════

def parse_operator(raw: Any) -> Operator:
    """Map a stored operator spelling to ``Operator``; raise ValueError if unknown."""
    if isinstance(raw, Operator):
        return raw
    if not isinstance(raw, str):
        raise ValueError(f"operator must be a string, got {type(raw).__name__}")
    key = raw.strip()
    if key in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[key]
    try:
        return Operator(key.lower())
    except ValueError:
        raise ValueError(f"unknown operator '{raw}'") from None


def parse_condition(raw: Any, index: int = 0) -> Condition:
    if isinstance(raw, Condition):
        return raw
    if not isinstance(raw, dict):
        raise ConditionParseError(index, "entry must be an object with field/operator/value")
    field_path = raw.get("field")
    if not isinstance(field_path, str) or not field_path.strip():
        raise ConditionParseError(index, "field must be a non-empty string")
    try:
        op = parse_operator(raw.get("operator"))
    except ValueError as exc:
        raise ConditionParseError(index, str(exc)) from None
    value = raw.get("value")
    if op in (Operator.IN_SET, Operator.NOT_IN_SET) and not isinstance(value, (list, tuple, set)):
        raise ConditionParseError(index, f"'{op.value}' needs a list value")
    if op not in _UNARY and "value" not in raw:
        raise ConditionParseError(index, f"'{op.value}' needs a value")
    return Condition(field=field_path.strip(), operator=op, value=value)


def parse_conditions(raw_list: Any) -> list[Condition]:
    """Decode a stored condition list. ``None`` decodes to the empty list."""
    if raw_list is None:
        return []
    if not isinstance(raw_list, (list, tuple)):
        raise ConditionParseError(0, "conditions must be a list")
    return [parse_condition(entry, i) for i, entry in enumerate(raw_list)]


# ═══════════════════════════════════════════════════════════════════════════
#  Evaluation
# ═══════════════════════════════════════════════════════════════════════════

def resolve_field(field_path: str, context: dict) -> Any:
    """
    Get a value from *context* using dot notation.

    ``"application.type"`` → ``context["application"]["type"]``. Numeric
    segments index into lists. Returns ``ABSENT`` when any segment is missing.
    """
    value: Any = context
    for part in field_path.split("."):
        if isinstance(value, dict):
            if part not in value:
                return ABSENT
            value = value[part]
        elif isinstance(value, (list, tuple)) and part.lstrip("-").isdigit():
            idx = int(part)
            if not -len(value) <= idx < len(value):
                return ABSENT
            value = value[idx]
        else:
            return ABSENT
    return value


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _ordered(a: Any, b: Any, cmp) -> bool:
    if _is_number(a) and _is_number(b):
        return cmp(a, b)
    if isinstance(a, str) and isinstance(b, str):
        return cmp(a, b)
    return False


def _contains(container: Any, needle: Any) -> bool:
    if isinstance(container, str):
        return isinstance(needle, str) and needle in container
    if isinstance(container, (list, tuple, set)):
        return needle in container
    if isinstance(container, dict):
        return needle in container
    return False


def _compare(op: Operator, actual: Any, expected: Any) -> bool:
    if actual is ABSENT:
        return op in _TRUE_ON_ABSENT

    if op == Operator.IS_PRESENT:
        return True
    if op == Operator.IS_ABSENT:
        return False
    if op == Operator.EQUALS:
        return _equals(actual, expected)
    if op == Operator.NOT_EQUALS:
        return not _equals(actual, expected)
    if op == Operator.GREATER_THAN:
        return _ordered(actual, expected, lambda a, b: a > b)
    if op == Operator.GREATER_THAN_OR_EQUAL:
        return _ordered(actual, expected, lambda a, b: a >= b)
    if op == Operator.LESS_THAN:
        return _ordered(actual, expected, lambda a, b: a < b)
    if op == Operator.LESS_THAN_OR_EQUAL:
        return _ordered(actual, expected, lambda a, b: a <= b)
    if op == Operator.CONTAINS:
        return _contains(actual, expected)
    if op == Operator.NOT_CONTAINS:
        return not _contains(actual, expected)
    if op == Operator.IN_SET:
        return any(_equals(actual, v) for v in expected)
    if op == Operator.NOT_IN_SET:
        return not any(_equals(actual, v) for v in expected)
    if op == Operator.STARTS_WITH:
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    if op == Operator.ENDS_WITH:
        return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)
    return False


def _equals(a: Any, b: Any) -> bool:
    # True == 1 in Python; keep booleans and numbers apart
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def check(condition: Condition, context: dict) -> tuple[bool, Any]:
    """Evaluate one decoded condition. Returns ``(passed, actual_value)``."""
    actual = resolve_field(condition.field, context)
    return _compare(condition.operator, actual, condition.value), actual


def evaluate(conditions, context: dict) -> bool:
    """
    True when every condition holds (AND). An empty list is unconditional.

    *conditions* may be raw stored dicts or already-decoded ``Condition``
    objects. Raises ``ConditionParseError`` on malformed entries.
    """
    for cond in parse_conditions(conditions):
        passed, _ = check(cond, context)
        if not passed:
            return False
    return True


def explain(conditions, context: dict) -> list[ConditionFailure]:
    """Return every condition that does not hold, in declared order."""
    failures = []
    for cond in parse_conditions(conditions):
        passed, actual = check(cond, context)
        if not passed:
            failures.append(ConditionFailure(
                field=cond.field,
                operator=cond.operator.value,
                expected=cond.value,
                actual=actual,
            ))
    return failures
